"""
test_prompt_builder.py -- System-prompt layering, fortune addenda, image helpers.
"""

from __future__ import annotations

import pytest

from facilitator.errors import (
    UnknownConversationModeError,
    UnknownFortuneTypeError,
    UnknownSessionLengthError,
    UnknownWeekError,
)
from facilitator.prompt_builder import (
    IMAGE_ALT_TEXT,
    PRIOR_INFO_HEADER,
    PRIOR_SUMMARIES_HEADER,
    article_instruction,
    build_image_prompt,
    compose_fortune_block,
    compose_omakase_block,
    compose_system_prompt,
    embed_image,
)


def test_prompt_is_deterministic(catalog):
    args = (catalog, 3, "deep", "long", "営業職です", [(1, "家族"), (2, "雑談")])
    assert compose_system_prompt(*args) == compose_system_prompt(*args)


def test_standard_medium_is_base_plus_length_modifier(catalog):
    prompt = compose_system_prompt(catalog, 1, "standard", "medium")
    base = catalog.get_week(1).system_prompt
    assert prompt == base + catalog.get_length("medium").prompt_modifier
    assert PRIOR_INFO_HEADER not in prompt
    assert PRIOR_SUMMARIES_HEADER not in prompt


def test_layers_appear_in_fixed_order(catalog):
    prompt = compose_system_prompt(
        catalog, 2, "deep", "short", "最近転職しました", [(1, "家族との時間を大切にしている")],
    )
    base = catalog.get_week(2).system_prompt
    mode = catalog.get_mode("deep").prompt_modifier
    length = catalog.get_length("short").prompt_modifier

    assert prompt.startswith(base + mode + length)
    assert prompt.index(PRIOR_INFO_HEADER) < prompt.index(PRIOR_SUMMARIES_HEADER)
    assert prompt.endswith(
        f"\n\n{PRIOR_INFO_HEADER}\n最近転職しました"
        f"\n\n{PRIOR_SUMMARIES_HEADER}\n第1週: 家族との時間を大切にしている\n"
    )


def test_blank_prior_info_is_omitted(catalog):
    prompt = compose_system_prompt(catalog, 1, "standard", "medium", "   \n")
    assert PRIOR_INFO_HEADER not in prompt


def test_summaries_sorted_by_week_and_empty_skipped(catalog):
    prompt = compose_system_prompt(
        catalog, 4, "standard", "medium", None, [(3, "仕事の話"), (1, "価値観"), (2, "")],
    )
    tail = prompt.split(PRIOR_SUMMARIES_HEADER + "\n", 1)[1]
    assert tail == "第1週: 価値観\n第3週: 仕事の話\n"


def test_unknown_week_lists_valid_weeks(catalog):
    with pytest.raises(UnknownWeekError) as info:
        compose_system_prompt(catalog, 6, "standard", "medium")
    assert info.value.valid_weeks == [1, 2, 3, 4, 5]
    assert "1, 2, 3, 4, 5" in str(info.value)


def test_unknown_mode_and_length(catalog):
    with pytest.raises(UnknownConversationModeError):
        compose_system_prompt(catalog, 1, "intense", "medium")
    with pytest.raises(UnknownSessionLengthError):
        compose_system_prompt(catalog, 1, "standard", "forever")


def test_fortune_block_names_type_and_participant(catalog):
    block = compose_fortune_block(catalog, "tarot", "花子")
    assert "【占いモード: タロット占い】" in block
    assert "参加者: 花子" in block


def test_unknown_fortune_type(catalog):
    with pytest.raises(UnknownFortuneTypeError):
        compose_fortune_block(catalog, "tea_reading_by_cat", "花子")


def test_omakase_lists_every_fortune(catalog):
    block = compose_omakase_block(catalog)
    assert "【お任せ占いモード】" in block
    for name in catalog.fortune_types.values():
        assert f"- {name}" in block


def test_article_template_mentions_participant_and_theme(catalog):
    week = catalog.get_week(3)
    text = article_instruction(week.theme, week.perspective, "太郎")
    assert f"{week.theme}（{week.perspective}の視点）" in text
    assert "## 太郎さんの大切にしていること" in text


def test_embed_image_after_first_heading():
    article = "前書き\n# 新しい一歩\n本文\n# 二つ目"
    result = embed_image(article, "/images/a.png")
    assert result.split("\n") == [
        "前書き", "# 新しい一歩", "", f"![{IMAGE_ALT_TEXT}](/images/a.png)", "", "本文", "# 二つ目",
    ]


def test_embed_image_without_heading_leaves_article():
    assert embed_image("見出しなし\n本文", "/images/a.png") == "見出しなし\n本文"


def test_image_prompt_uses_perspective_scene(catalog):
    prompt = build_image_prompt(catalog, 3, "WE")
    assert catalog.image_scenes["WE"] in prompt
    assert prompt.startswith(catalog.image_style)


def test_image_prompt_falls_back_to_week_one_scene(catalog):
    prompt = build_image_prompt(catalog, 9, "Unknown")
    assert catalog.image_scenes[catalog.get_week(1).perspective] in prompt


def test_deep_long_modifiers_precede_prior_info(catalog):
    prompt = compose_system_prompt(catalog, 1, "deep", "long", "X")
    deep = catalog.get_mode("deep").prompt_modifier
    long_ = catalog.get_length("long").prompt_modifier
    assert prompt.index(deep) < prompt.index(long_) < prompt.rindex("X")
