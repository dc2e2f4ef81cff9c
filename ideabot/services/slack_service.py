"""
Slackサービスモジュール
Slack関連の機能（投稿、ブロック生成、署名検証、リアクション取得など）を提供
"""
import asyncio
import hashlib
import hmac
import time
from typing import Dict, List, Optional

from fastapi import HTTPException
from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError, SlackClientError

from ideabot.config import SLACK_SIGNING_SECRET, VOTE_EMOJI, client_slack
from ideabot.errors import ChatTransportError
from ideabot.models import CreatedIssue, Draft, IdeaIssue, MessageRef

NAMESPACE = "idea"
ANSWERS_CALLBACK_ID = f"{NAMESPACE}:answers"
MAX_QUESTIONS = 5


def verify_slack_signature(body: bytes, timestamp: str, signature: str):
    """
    Slackリクエストの署名を検証

    Args:
        body: リクエストボディ（バイト）
        timestamp: タイムスタンプ
        signature: 署名
    """
    if not SLACK_SIGNING_SECRET:
        return
    # 5分以内チェック
    try:
        expired = abs(time.time() - int(timestamp)) > 60 * 5
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Slack timestamp invalid")
    if expired:
        raise HTTPException(status_code=401, detail="Slack timestamp expired")
    try:
        basestring = f"v0:{timestamp}:{body.decode()}".encode()
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="Request body is not UTF-8")
    my_sig = "v0=" + hmac.new(SLACK_SIGNING_SECRET.encode(), basestring, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(my_sig, signature or ""):
        raise HTTPException(status_code=401, detail="Slack signature invalid")


def base_emoji(name: str) -> str:
    """'+1::skin-tone-2' → '+1'"""
    return (name or "").split("::", 1)[0]


def action_id_for(action: str, draft_id: str) -> str:
    return f"{NAMESPACE}:{action}:{draft_id}"


def display_title(draft: Draft) -> str:
    return (draft.title or "").replace("[IDEA]", "", 1).strip() or "アイデア"


def _bullets(items: List[str]) -> str:
    return "\n".join(f"• {x}" for x in items) if items else "• (to be refined)"


def _button(text: str, action: str, draft_id: str, style: Optional[str] = None) -> dict:
    b = {"type": "button", "text": {"type": "plain_text", "text": text},
         "action_id": action_id_for(action, draft_id), "value": draft_id}
    if style:
        b["style"] = style
    return b


def build_question_blocks(draft: Draft, interactive: bool = True):
    """
    確認質問（回答 / スキップ）用のSlackブロックを生成

    Args:
        draft: 下書き
        interactive: False の場合はボタンなし（無効化後の表示）

    Returns:
        Slackブロックのリスト
    """
    note = draft.structured_note
    questions = "\n".join(f"*Q{i + 1}.* {q}" for i, q in enumerate(draft.open_questions))
    blocks = [
        {"type": "header", "text": {"type": "plain_text", "text": display_title(draft)[:150]}},
        {"type": "section", "text": {"type": "mrkdwn",
                                     "text": f"*Draft Summary*\n{note.summary if note else draft.raw_text}"}},
        {"type": "section", "text": {"type": "mrkdwn", "text": f"*Open Questions*\n{questions or '-'}"}},
    ]
    if interactive:
        blocks.append({"type": "actions", "elements": [
            _button("質問に回答", "answer", draft.id, "primary"),
            _button("スキップして承認へ", "skip", draft.id),
        ]})
    return blocks


def build_approval_blocks(draft: Draft, interactive: bool = True):
    """
    承認前プレビュー（承認 / キャンセル）用のSlackブロックを生成
    """
    note = draft.structured_note
    blocks = [{"type": "header", "text": {"type": "plain_text", "text": display_title(draft)[:150]}}]
    if note:
        blocks += [
            {"type": "section", "text": {"type": "mrkdwn", "text": f"*Summary*\n{note.summary or '(missing)'}"}},
            {"type": "section", "text": {"type": "mrkdwn",
                                         "text": f"*Gameplay Impact*\n{note.gameplay_impact or '(unspecified)'}"}},
            {"type": "section", "text": {"type": "mrkdwn",
                                         "text": f"*Key Implementation Notes*\n{_bullets(note.implementation_notes)}"}},
        ]
        if note.tags:
            blocks.append({"type": "context", "elements": [
                {"type": "mrkdwn", "text": " ".join(f"`{t}`" for t in note.tags)}]})
    if interactive:
        blocks.append({"type": "actions", "elements": [
            _button("承認して投稿", "approve", draft.id, "primary"),
            _button("キャンセル", "cancel", draft.id),
        ]})
    return blocks


def build_answers_modal(draft: Draft):
    """
    確認質問に回答するモーダルを生成（すべて任意入力）
    """
    blocks = []
    for i, q in enumerate(draft.open_questions[:MAX_QUESTIONS]):
        blocks.append({
            "type": "input",
            "block_id": f"q{i + 1}",
            "optional": True,
            "label": {"type": "plain_text", "text": f"Q{i + 1}. {q}"[:2000]},
            "element": {"type": "plain_text_input", "action_id": "inp", "multiline": True, "max_length": 1000},
        })
    return {
        "type": "modal",
        "callback_id": ANSWERS_CALLBACK_ID,
        "private_metadata": draft.id,
        "title": {"type": "plain_text", "text": "質問に回答"},
        "submit": {"type": "plain_text", "text": "送信"},
        "close": {"type": "plain_text", "text": "キャンセル"},
        "blocks": blocks,
    }


def build_notice_view(text: str):
    """モーダル送信時のエラー表示用ビュー"""
    return {
        "type": "modal",
        "title": {"type": "plain_text", "text": "アイデア"},
        "close": {"type": "plain_text", "text": "閉じる"},
        "blocks": [{"type": "section", "text": {"type": "mrkdwn", "text": text}}],
    }


def parse_modal_answers(values: Dict[str, dict]) -> Dict[int, str]:
    """view_submission の state.values から {質問番号: 回答} を取り出す"""
    answers: Dict[int, str] = {}
    for i in range(1, MAX_QUESTIONS + 1):
        value = (values.get(f"q{i}", {}).get("inp", {}) or {}).get("value")
        if value is not None:
            answers[i] = value
    return answers


def vote_announcement_text(issue: CreatedIssue) -> str:
    text = f"💡 Idea #{issue.number}: {issue.title}"
    if issue.url:
        text += f"\n{issue.url}"
    return text + f"\n(:{VOTE_EMOJI}: で投票してください)"


def build_top_ideas_blocks(ranked: List[IdeaIssue], count: int):
    """
    上位アイデア一覧のSlackブロックを生成
    """
    if not ranked:
        return [{"type": "section", "text": {"type": "mrkdwn", "text": "アイデアはまだありません。"}}]
    lines = []
    for idx, i in enumerate(ranked):
        priority = next((l for l in i.labels if l in ("P1", "P2", "P3", "P4", "P5")), "")
        suffix = f" [{priority}]" if priority else ""
        title = f"<{i.url}|#{i.number} {i.title}>" if i.url else f"#{i.number} {i.title}"
        lines.append(f"*{idx + 1}.* {title}  (:{VOTE_EMOJI}: {i.votes}){suffix}")
    return [
        {"type": "header", "text": {"type": "plain_text", "text": f"Top {count} Ideas"}},
        {"type": "section", "text": {"type": "mrkdwn", "text": "\n".join(lines)}},
    ]


class SlackTransport:
    """
    Slack Web API のラッパー

    WebClient は同期APIなので asyncio.to_thread() 経由で呼び出す。
    """

    def __init__(self, client: Optional[WebClient] = None):
        self._client = client or client_slack
        self._bot_user_id: Optional[str] = None
        self._bot_users: Dict[str, bool] = {}

    async def _call(self, method: str, **kwargs):
        try:
            return await asyncio.to_thread(getattr(self._client, method), **kwargs)
        except SlackApiError as e:
            print(f"[Slack] {method} failed: {e.response.get('error') if e.response else e}")
            raise ChatTransportError(f"{method} failed") from e
        except (SlackClientError, OSError) as e:
            # URLError・タイムアウトなど、APIの応答がない失敗
            print(f"[Slack] {method} failed: {type(e).__name__}: {e}")
            raise ChatTransportError(f"{method} failed: {type(e).__name__}") from e

    async def post_message(self, channel_id: str, text: str, blocks=None,
                           thread_ts: Optional[str] = None) -> MessageRef:
        kwargs = {"channel": channel_id, "text": text}
        if blocks is not None:
            kwargs["blocks"] = blocks
        if thread_ts:
            kwargs["thread_ts"] = thread_ts
        resp = await self._call("chat_postMessage", **kwargs)
        return MessageRef(channel_id=resp["channel"], ts=resp["ts"])

    async def open_thread(self, channel_id: str, text: str) -> MessageRef:
        """チャンネルに親メッセージを投稿し、スレッドの起点とする"""
        return await self.post_message(channel_id, text)

    async def post_ephemeral(self, channel_id: str, user_id: str, text: str) -> None:
        """本人にだけ見えるメッセージ（失敗しても握りつぶす）"""
        try:
            await self._call("chat_postEphemeral", channel=channel_id, user=user_id, text=text)
        except ChatTransportError:
            pass

    async def disable_prompt(self, ref: Optional[MessageRef], blocks, text: str = "アイデア下書き") -> None:
        """ボタン付きメッセージをボタンなしの表示に差し替える（ベストエフォート）"""
        if not ref:
            return
        try:
            await self._call("chat_update", channel=ref.channel_id, ts=ref.ts, text=text, blocks=blocks)
        except ChatTransportError:
            print(f"[Slack] Could not retract prompt {ref.message_id}, ignoring")

    async def open_modal(self, trigger_id: str, view: dict) -> None:
        await self._call("views_open", trigger_id=trigger_id, view=view)

    async def add_reaction(self, ref: MessageRef, name: str) -> None:
        await self._call("reactions_add", channel=ref.channel_id, timestamp=ref.ts, name=name)

    async def reaction_count(self, channel_id: str, ts: str, name: str) -> int:
        """
        メッセージに指定絵文字を付けた人数

        肌色違いも同じ絵文字として扱い、複数の色で付けた人も1人と数える。
        users が返ってこないリアクションは count をそのまま足す。
        """
        resp = await self._call("reactions_get", channel=channel_id, timestamp=ts, full=True)
        reactions = (resp.get("message") or {}).get("reactions") or []
        voters = set()
        unattributed = 0
        for r in reactions:
            if base_emoji(r.get("name", "")) != name:
                continue
            if r.get("users"):
                voters.update(r["users"])
            else:
                unattributed += r.get("count", 0)
        return len(voters) + unattributed

    async def bot_user_id(self) -> str:
        if self._bot_user_id is None:
            resp = await self._call("auth_test")
            self._bot_user_id = resp["user_id"]
        return self._bot_user_id

    async def is_bot_user(self, user_id: str) -> bool:
        """ボット（自分自身を含む）かどうか"""
        if user_id == await self.bot_user_id():
            return True
        if user_id not in self._bot_users:
            resp = await self._call("users_info", user=user_id)
            self._bot_users[user_id] = bool((resp.get("user") or {}).get("is_bot"))
        return self._bot_users[user_id]

