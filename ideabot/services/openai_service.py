"""
OpenAIサービスモジュール
アイデアの原文を構造化デザインノートに変換する（初回 / 回答を反映した再生成）
"""
import asyncio
import json
from typing import Any, Dict, List, Optional

from openai import OpenAIError

from ideabot.config import OPENAI_MODEL, client_oa
from ideabot.errors import EnrichmentError
from ideabot.models import Scope, StructuredNote

TITLE_MAX = 80
MAX_NOTE_QUESTIONS = 3
DEFAULT_IMPACT = "Quality-of-life or feature addition."

# モデルがJSONの見本をそのまま返してきた場合に捨てる文字列
PLACEHOLDER_TOKENS = {
    "UI", "3D assets", "Animation", "FX", "Input", "Game Logic",
    "API/WS endpoint", "Jobs/queues", "State sync", "Economy logic",
    "Schema change?", "New entities/fields?", "No changes?",
}

SYSTEM_PREFACE = """You are assisting a small team building a persistent, space-based MMO/RTS.
Pillars: persistent galaxy; player-built economy; territory control; fleets; tech/progression; strategic UI; server authority.
Return practical, implementable design notes; concise; no lore; no code unless asked."""

JSON_SHAPE = """Return ONLY valid JSON with this exact shape:
{
  "title": "Short, descriptive (<= 80 chars)",
  "summary": "2-4 sentences explaining the idea & player value",
  "gameplayImpact": "How this changes gameplay or player experience",
  "scope": {
    "client": ["Concrete client work items, or [\\"None\\"]"],
    "server": ["Concrete server work items, or [\\"None\\"]"],
    "database": ["Concrete DB changes, or [\\"No changes\\"]"]
  },
  "implementationNotes": ["task 1", "task 2"],
  "risks": ["risk 1"],
  "telemetry": ["what to log/measure"],
  "antiCheat": ["server-authority validations"],
  "dependencies": ["systems/configs impacted"],
  "openQuestions": ["clear questions for the player (max 3)"],
  "tags": ["UI", "Economy", "Fleet", "Territory", "PvP", "PvE", "Server", "DB", "QoL", "Balance"]
}
Rules:
- Do NOT copy example labels. Replace them with concrete items or use ["None"] / ["No changes"].
- Keep openQuestions to at most 3, and only ask when truly needed; otherwise [].
- Output only JSON."""

# JSONのキー（camelCase）→ StructuredNote のフィールド
_PAYLOAD_KEYS = {
    "title": "title",
    "summary": "summary",
    "gameplayImpact": "gameplay_impact",
    "implementationNotes": "implementation_notes",
    "risks": "risks",
    "telemetry": "telemetry",
    "antiCheat": "anti_cheat",
    "dependencies": "dependencies",
    "openQuestions": "open_questions",
    "tags": "tags",
}


def first_pass_prompt(raw_text: str, author_label: str) -> str:
    return f"""Given the raw player idea below, produce a concise, developer-ready design note as JSON.
- Fill "scope.client" / "scope.server" with concrete work items (or ["None"]).
- Set "scope.database" to specific changes or ["No changes"].

<author>{author_label}</author>

{JSON_SHAPE}

Raw player idea:
\"\"\"{raw_text}\"\"\""""


def refine_prompt(raw_text: str, answers_text: str, author_label: str, previous_json: str) -> str:
    return f"""Refine the existing design note based on the player's clarifications.
Remove any openQuestions that are now answered and keep at most 3.

Existing design note JSON:
```json
{previous_json}
```

Player clarifications (Q/A):
```
{answers_text}
```

Keep the same structure and fields. Fill in missing gameplayImpact, scope, implementationNotes and risks.

{JSON_SHAPE}

Original raw idea:
\"\"\"{raw_text}\"\"\"
Submitted by: {author_label}"""


def strip_fences(content: str) -> str:
    """```json ... ``` のコードブロックを除去"""
    text = (content or "").strip()
    if "```" in text:
        text = text.split("```")[1]
        if text.strip().lower().startswith("json"):
            text = text.strip()[4:]
    return text.strip()


def _clean_list(value: Any, scrub: bool = True) -> List[str]:
    if not isinstance(value, list):
        return []
    items = [str(x).strip() for x in value if x is not None]
    items = [x for x in items if x]
    if scrub:
        items = [x for x in items if x not in PLACEHOLDER_TOKENS]
    return items


def _or_sentinel(items: List[str], sentinel: str = "None") -> List[str]:
    return items if items else [sentinel]


def note_from_payload(data: Dict[str, Any]) -> StructuredNote:
    """モデルが返したJSON（camelCase）を StructuredNote に変換（正規化前）"""
    values: Dict[str, Any] = {}
    for key, field in _PAYLOAD_KEYS.items():
        if key in data:
            values[field] = data[key]
    for field in ("title", "summary", "gameplay_impact"):
        v = values.get(field)
        values[field] = "" if v is None else str(v)
    for field in ("implementation_notes", "risks", "telemetry", "anti_cheat",
                  "dependencies", "open_questions", "tags"):
        values[field] = _clean_list(values.get(field), scrub=False)

    scope = data.get("scope") if isinstance(data.get("scope"), dict) else {}
    values["scope"] = Scope(
        client=_clean_list(scope.get("client"), scrub=False),
        server=_clean_list(scope.get("server"), scrub=False),
        database=_clean_list(scope.get("database"), scrub=False),
    )
    return StructuredNote(**values)


def note_to_payload(note: StructuredNote) -> Dict[str, Any]:
    """StructuredNote をプロンプト用のJSON（camelCase）に戻す"""
    data: Dict[str, Any] = {key: getattr(note, field) for key, field in _PAYLOAD_KEYS.items()}
    data["scope"] = note.scope.model_dump()
    return data


def normalize_note(note: Optional[StructuredNote], raw_text: str) -> StructuredNote:
    """
    ノートを正規化する

    - タイトル / サマリー / 影響が空なら原文から補完
    - リスト項目は空白・見本文字列を除き、空なら ["None"]（DBは ["No changes"]）
    - openQuestions は最大3件、空のまま（質問の有無で分岐するため）

    Args:
        note: 正規化するノート（None なら原文だけから作る）
        raw_text: 投稿された原文

    Returns:
        正規化済みの StructuredNote
    """
    note = note or StructuredNote()
    raw = (raw_text or "").strip()
    return StructuredNote(
        title=note.title.strip() or raw[:TITLE_MAX],
        summary=note.summary.strip() or raw,
        gameplay_impact=note.gameplay_impact.strip() or DEFAULT_IMPACT,
        scope=Scope(
            client=_or_sentinel(_clean_list(note.scope.client)),
            server=_or_sentinel(_clean_list(note.scope.server)),
            database=_or_sentinel(_clean_list(note.scope.database), "No changes"),
        ),
        implementation_notes=_or_sentinel(_clean_list(note.implementation_notes)),
        risks=_or_sentinel(_clean_list(note.risks)),
        telemetry=_or_sentinel(_clean_list(note.telemetry)),
        anti_cheat=_or_sentinel(_clean_list(note.anti_cheat)),
        dependencies=_or_sentinel(_clean_list(note.dependencies)),
        open_questions=_clean_list(note.open_questions)[:MAX_NOTE_QUESTIONS],
        tags=_clean_list(note.tags, scrub=False),
    )


def parse_note(content: str) -> Optional[StructuredNote]:
    """モデル出力をパース。JSONオブジェクトでなければ None"""
    try:
        data = json.loads(strip_fences(content))
    except (json.JSONDecodeError, TypeError):
        return None
    if not isinstance(data, dict):
        return None
    return note_from_payload(data)


class EnrichmentGateway:
    """OpenAIでアイデアを構造化するゲートウェイ"""

    def __init__(self, client=None, model: str = OPENAI_MODEL, attempts: int = 2):
        self._client = client or client_oa
        self.model = model
        self.attempts = attempts

    def _call_once(self, user_prompt: str) -> str:
        resp = self._client.chat.completions.create(
            model=self.model,
            temperature=0.2,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": SYSTEM_PREFACE},
                {"role": "user", "content": user_prompt},
            ],
        )
        return resp.choices[0].message.content or "{}"

    async def _enrich(self, user_prompt: str, raw_text: str,
                      previous: Optional[StructuredNote]) -> StructuredNote:
        for attempt in range(1, self.attempts + 1):
            try:
                content = await asyncio.to_thread(self._call_once, user_prompt)
            except OpenAIError as e:
                print(f"[AI] OpenAI request failed: {e}")
                raise EnrichmentError(str(e)) from e
            note = parse_note(content)
            if note is not None:
                return normalize_note(note, raw_text)
            print(f"[AI] JSON parse failed (try {attempt}). Raw content: {content}")

        # 直前のノートがあればそれを維持、なければ原文から最小限のノートを作る
        return normalize_note(previous, raw_text)

    async def first_pass(self, raw_text: str, author_label: str) -> StructuredNote:
        """投稿された原文から最初のノートを生成"""
        return await self._enrich(first_pass_prompt(raw_text, author_label), raw_text, None)

    async def refine(self, raw_text: str, answers_text: str, author_label: str,
                     previous: Optional[StructuredNote]) -> StructuredNote:
        """
        質問への回答を反映してノートを再生成

        Args:
            raw_text: 投稿された原文
            answers_text: "Q1: ...\\nA1: ..." 形式の回答
            author_label: 投稿者の表示名
            previous: 直前のノート

        Returns:
            正規化済みの StructuredNote（パース失敗時は previous を正規化したもの）
        """
        previous_json = json.dumps(note_to_payload(previous), ensure_ascii=False, indent=2) if previous else "{}"
        prompt = refine_prompt(raw_text, answers_text, author_label, previous_json)
        return await self._enrich(prompt, raw_text, previous)
