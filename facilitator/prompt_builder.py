"""
prompt_builder.py -- Layered system-prompt assembly.

Layer order is fixed so the same inputs always produce the same prompt:
  1. Week base prompt
  2. Conversation-mode modifier (standard contributes nothing)
  3. Session-length modifier
  4. Participant's prior information
  5. Summaries of earlier completed weeks

Also builds the per-type fortune addenda and the ephemeral instructions
used for greeting, summary and article generation. Ephemeral instructions
are sent once and never stored in a transcript.
"""

from __future__ import annotations

import logging
from typing import Sequence

from facilitator.catalog import Catalog

logger = logging.getLogger(__name__)

PRIOR_INFO_HEADER: str = "【参加者の事前情報】"
PRIOR_SUMMARIES_HEADER: str = "【これまでのセッション要約】"
IMAGE_ALT_TEXT: str = "セッションのイメージ"


def compose_system_prompt(
    catalog: Catalog,
    week: int,
    conversation_mode: str,
    session_length: str,
    prior_info: str | None = None,
    prior_summaries: Sequence[tuple[int, str]] = (),
) -> str:
    """Build the session's system prompt. Raises UnknownWeekError for undefined weeks."""
    definition = catalog.get_week(week)
    mode = catalog.get_mode(conversation_mode)
    length = catalog.get_length(session_length)

    prompt = definition.system_prompt
    if mode.prompt_modifier:
        prompt += mode.prompt_modifier
    if length.prompt_modifier:
        prompt += length.prompt_modifier

    if prior_info and prior_info.strip():
        prompt += f"\n\n{PRIOR_INFO_HEADER}\n{prior_info}"

    summary_lines = [f"第{w}週: {s}" for w, s in sorted(prior_summaries, key=lambda p: p[0]) if s]
    if summary_lines:
        prompt += f"\n\n{PRIOR_SUMMARIES_HEADER}\n" + "".join(line + "\n" for line in summary_lines)

    logger.debug(
        "Composed prompt: week=%d mode=%s length=%s prior_info=%s summaries=%d",
        week, conversation_mode, session_length, bool(prior_info), len(summary_lines),
    )
    return prompt


# -- Fortune addenda ----------------------------------------------------------

def compose_fortune_block(catalog: Catalog, fortune_type: str, user_name: str) -> str:
    """Instruction block for role-playing one divination style. Raises UnknownFortuneTypeError."""
    fortune_name = catalog.fortune_name(fortune_type)
    return f"""
【占いモード: {fortune_name}】

あなたは{fortune_name}の専門家でもあります。
参加者: {user_name}

占いの進め方:
1. 必要な情報を自然に聞く
2. {fortune_name}の手法に基づいて分析
3. 結果を分かりやすく、前向きに伝える
4. 仕事や人生に活かせる気づきを提供
5. 占いはあくまで自己理解のツールとして扱う

重要:
- 断定的な表現は避け、「〜かもしれません」「〜の傾向があります」という柔らかい表現を使う
- ネガティブな結果も、成長の機会として前向きに伝える
- 占いを楽しみながらも、自己理解を深めることを重視する
- 専門的すぎる用語は避け、分かりやすく説明する
"""


def compose_omakase_block(catalog: Catalog) -> str:
    """Let the facilitator pick two or three fortune styles itself."""
    available = "\n".join(f"- {name}" for name in catalog.fortune_types.values())
    return f"""
【お任せ占いモード】

参加者が「お任せ占い」を選びました。
以下の占術の中から、これまでの対話や参加者の状況を踏まえて、
最も適切だと思われる2〜3種類の占術を選んでください。

利用可能な占術:
{available}

選んだ占術とその理由を簡潔に説明してから、占いを始めてください。
例: 「あなたには西洋占星術とタロット占いが良さそうです。なぜなら...」
"""


# -- Ephemeral instructions ---------------------------------------------------

def greeting_instruction(user_name: str, theme: str) -> str:
    return (
        f"セッションを開始してください。{user_name}さんへの挨拶と、"
        f"今週のテーマ「{theme}」について簡単に説明し、最初の質問をしてください。"
    )


def summary_instruction() -> str:
    return (
        "今回のセッションの内容を200文字程度で要約してください。"
        "参加者の価値観、大切にしていること、気づきなどをまとめてください。"
    )


def article_instruction(theme: str, perspective: str, user_name: str) -> str:
    """Fixed article template: title, theme, highlights, values, insights, next step."""
    return f"""今回のセッションの内容を、読みやすく、心に残る記事形式にまとめてください。
参加者が後で読み返したときに、セッションでの気づきや大切なことを思い出せるようにしてください。

以下の形式でお願いします：

# タイトル（セッションの核心を表す、温かく前向きなタイトル）

## 今週のテーマ
{theme}（{perspective}の視点）

## 対話のハイライト
このセッションで特に印象的だった対話や気づきを3-5項目で紹介してください。
- 参加者の言葉を大切にし、具体的なエピソードを含める
- 「なぜ？」を掘り下げた部分や、新たな気づきがあった瞬間を捉える
- 箇条書きまたは小見出しで整理

## {user_name}さんの大切にしていること
このセッションで明らかになった価値観、大切にしていること、想いをまとめてください。
- 抽象的な言葉だけでなく、具体的な表現も含める
- 参加者の言葉をできるだけそのまま活かす
- 前週との繋がりがあれば言及する

## 気づきと発見
セッションを通じて得られた新たな視点や気づきをまとめてください。
- 参加者自身が発見したこと
- 対話の中で見えてきたパターンや傾向
- 今後に活かせそうな洞察

## 次への一歩
今後に向けてのヒントや、考えてみたいことを提案してください。
- 押し付けがましくなく、優しく提案する
- 次週のセッション（あれば）への期待を込める
- 温かく、希望を持てる言葉で締めくくる

**トーン**: 温かく、共感的で、前向き。参加者を応援する気持ちを込めて。"""


# -- Images -------------------------------------------------------------------

def build_image_prompt(catalog: Catalog, week: int, perspective: str) -> str:
    """Illustration prompt keyed by the week's perspective; falls back to week 1's scene."""
    scene = catalog.image_scenes.get(perspective)
    if scene is None:
        fallback = catalog.weeks.get(1)
        scene = catalog.image_scenes.get(fallback.perspective, "") if fallback else ""
        logger.info("No image scene for perspective '%s' (week %d); using week 1 scene", perspective, week)
    return f"{catalog.image_style} {scene}".strip()


def embed_image(article: str, image_url: str) -> str:
    """Insert a markdown image right after the first `# ` heading line."""
    lines = article.split("\n")
    for i, line in enumerate(lines):
        if line.startswith("# "):
            lines[i + 1:i + 1] = ["", f"![{IMAGE_ALT_TEXT}]({image_url})", ""]
            return "\n".join(lines)
    return article
