"""
アイデア投稿フローサービス
下書き作成 → （確認質問）→ 承認 / キャンセル → GitHub Issue 投稿 の状態遷移を管理する

状態遷移そのもの（new_draft / apply_answers / apply_skip など）は I/O を持たない関数で、
IdeaController がそれを呼び出して Slack / OpenAI / GitHub とのやり取りを行う。
"""
import traceback
import uuid
from typing import Dict, List, Optional, Tuple

from ideabot.config import VOTE_EMOJI
from ideabot.errors import (
    DraftNotFoundError,
    IdeaFlowError,
    InvalidPhaseError,
    NotAuthorizedError,
    TrackerError,
    UpstreamError,
    UsageError,
)
from ideabot.models import CreatedIssue, Draft, MessageRef, StructuredNote
from ideabot.services.github_service import TrackerClient
from ideabot.services.openai_service import TITLE_MAX, EnrichmentGateway
from ideabot.services.slack_service import (
    MAX_QUESTIONS,
    NAMESPACE,
    SlackTransport,
    build_answers_modal,
    build_approval_blocks,
    build_question_blocks,
    vote_announcement_text,
)
from ideabot.utils.storage import DraftStore, VoteLinkTable

TITLE_PREFIX = "[IDEA]"
ACTIONS = ("answer", "skip", "approve", "cancel")


# =========================
# Issue本文
# =========================
def _lines_or_none(items: List[str]) -> str:
    return "\n".join(f"- {x}" for x in items) if items else "- (none)"


def draft_title(note: StructuredNote, raw_text: str) -> str:
    return f"{TITLE_PREFIX} {(note.title or raw_text)[:TITLE_MAX]}"


def render_issue_body(note: StructuredNote, author_label: str, author_id: str,
                      raw_text: str, answers_text: str = "") -> str:
    """
    構造化ノートからGitHub Issueの本文（Markdown）を組み立てる
    """
    tags = f"\n**Tags**\n{' '.join(f'`{t}`' for t in note.tags)}\n" if note.tags else ""
    clarifications = f"\n**Player Clarifications**\n{answers_text}\n" if answers_text else ""
    quoted = "\n".join(f"> {line}" for line in raw_text.splitlines()) or "> "
    return f"""Submitted by **{author_label}** (Slack ID: {author_id})

**Summary**
{note.summary or "(missing)"}

**Gameplay Impact**
{note.gameplay_impact or "(unspecified)"}

**Client**
{_lines_or_none(note.scope.client)}

**Server**
{_lines_or_none(note.scope.server)}

**Database**
{_lines_or_none(note.scope.database)}

**Implementation Notes**
{_lines_or_none(note.implementation_notes)}

**Risks**
{_lines_or_none(note.risks)}

**Telemetry**
{_lines_or_none(note.telemetry)}

**Anti-Cheat / Validation**
{_lines_or_none(note.anti_cheat)}

**Dependencies**
{_lines_or_none(note.dependencies)}
{tags}{clarifications}
---

**Original Player Text**
{quoted}
"""


# =========================
# 状態遷移（I/Oなし）
# =========================
def parse_action_id(action_id: str) -> Optional[Tuple[str, str]]:
    """
    'idea:<action>:<draft_id>' を (action, draft_id) に分解

    Returns:
        名前空間が違う / 形式が不正な場合は None
    """
    parts = (action_id or "").split(":")
    if len(parts) != 3 or parts[0] != NAMESPACE or not parts[2]:
        return None
    return parts[1], parts[2]


def new_draft(raw_text: str, author_id: str, author_label: str, note: StructuredNote,
              parent_channel_id: str, created_at: float, draft_id: Optional[str] = None) -> Draft:
    """初回のノートから下書きを作る。質問があれば回答待ち、なければ承認待ち"""
    questions = note.open_questions[:MAX_QUESTIONS]
    return Draft(
        id=draft_id or uuid.uuid4().hex,
        author_id=author_id,
        author_label=author_label,
        raw_text=raw_text,
        title=draft_title(note, raw_text),
        body=render_issue_body(note, author_label, author_id, raw_text),
        structured_note=note,
        open_questions=questions,
        phase="awaiting_answers" if questions else "awaiting_approval",
        created_at=created_at,
        parent_channel_id=parent_channel_id,
    )


def ensure_author(draft: Draft, actor_id: str) -> None:
    if actor_id != draft.author_id:
        raise NotAuthorizedError(f"{actor_id} is not the author of {draft.id}")


def ensure_phase(draft: Draft, phase: str) -> None:
    if draft.phase != phase:
        raise InvalidPhaseError(f"draft {draft.id} is {draft.phase}, expected {phase}")


def build_transcript(questions: List[str], answers: Dict[int, str]) -> str:
    """
    質問と回答を "Q1: ...\\nA1: ..." 形式にまとめる（回答が空の質問は Q のみ）
    """
    lines = []
    for idx, q in enumerate(questions[:MAX_QUESTIONS], start=1):
        ans = (answers.get(idx) or "").strip()
        if not q and not ans:
            continue
        lines.append(f"Q{idx}: {q}")
        if ans:
            lines.append(f"A{idx}: {ans}")
    return "\n".join(lines)


def apply_answers(draft: Draft, actor_id: str, note: StructuredNote, transcript: str) -> Draft:
    """回答を反映した新しいノートで下書きを更新し、承認待ちへ"""
    ensure_author(draft, actor_id)
    ensure_phase(draft, "awaiting_answers")
    return draft.model_copy(update={
        "structured_note": note,
        "title": draft_title(note, draft.raw_text),
        "body": render_issue_body(note, draft.author_label, draft.author_id, draft.raw_text, transcript),
        "answers_text": transcript,
        "phase": "awaiting_approval",
    })


def apply_skip(draft: Draft, actor_id: str) -> Draft:
    """質問をスキップして承認待ちへ（ノートはそのまま）"""
    ensure_author(draft, actor_id)
    ensure_phase(draft, "awaiting_answers")
    return draft.model_copy(update={"phase": "awaiting_approval"})


def ensure_can_finish(draft: Draft, actor_id: str) -> None:
    """承認 / キャンセルできる状態か"""
    ensure_author(draft, actor_id)
    ensure_phase(draft, "awaiting_approval")


# =========================
# コントローラー
# =========================
class IdeaController:
    """Slackからの操作を受けて下書きの状態遷移と外部サービス呼び出しを行う"""

    def __init__(self, store: DraftStore, links: VoteLinkTable, enricher: EnrichmentGateway,
                 tracker: TrackerClient, transport: SlackTransport, vote_emoji: str = VOTE_EMOJI):
        self.store = store
        self.links = links
        self.enricher = enricher
        self.tracker = tracker
        self.transport = transport
        self.vote_emoji = vote_emoji

    def load(self, draft_id: str, actor_id: str) -> Draft:
        """下書きを取得し、操作者が投稿者本人か確認する"""
        draft = self.store.get(draft_id)
        if draft is None:
            raise DraftNotFoundError(f"draft {draft_id} not found")
        ensure_author(draft, actor_id)
        return draft

    async def _post_prompt(self, draft: Draft) -> MessageRef:
        """現在のフェーズに応じたボタン付きメッセージをスレッドに投稿"""
        if draft.phase == "awaiting_answers":
            text = f"<@{draft.author_id}> 確定前にいくつか質問があります。回答するかスキップしてください。"
            blocks = build_question_blocks(draft)
        else:
            text = f"<@{draft.author_id}> AIが整理した下書きです。承認するとGitHubに投稿されます。"
            blocks = build_approval_blocks(draft)
        channel_id = draft.thread.channel_id if draft.thread else draft.parent_channel_id
        thread_ts = draft.thread.ts if draft.thread else None
        return await self.transport.post_message(channel_id, text, blocks, thread_ts=thread_ts)

    async def _retract_prompt(self, draft: Draft) -> None:
        if draft.phase == "awaiting_answers":
            blocks = build_question_blocks(draft, interactive=False)
        else:
            blocks = build_approval_blocks(draft, interactive=False)
        try:
            await self.transport.disable_prompt(draft.prompt, blocks)
        except UpstreamError:
            print(f"[Idea] Prompt retraction failed for {draft.id}, ignoring")

    async def _notify_thread(self, draft: Draft, text: str) -> None:
        """スレッドへのお知らせ（失敗しても続行）"""
        if not draft.thread:
            return
        try:
            await self.transport.post_message(draft.thread.channel_id, text, thread_ts=draft.thread.ts)
        except UpstreamError:
            print(f"[Idea] Thread notice failed for {draft.id}, ignoring")

    # ---- 1. 投稿 ----
    async def submit(self, raw_text: str, author_id: str, author_label: str, channel_id: str) -> Draft:
        """
        アイデアを受け付けて下書きを作成する

        Args:
            raw_text: 投稿されたアイデア本文
            author_id: 投稿者のSlackユーザーID
            author_label: 投稿者の表示名
            channel_id: 投稿されたチャンネル

        Returns:
            作成した下書き
        """
        raw = (raw_text or "").strip()
        if not raw:
            raise UsageError("empty idea text")

        note = await self.enricher.first_pass(raw, author_label)
        draft = new_draft(raw, author_id, author_label, note, channel_id, self.store.now())

        thread = await self.transport.open_thread(
            channel_id, f"💡 *{draft.title}*\n<@{author_id}> さんのアイデア（詳細はスレッドで）")
        draft = draft.model_copy(update={"thread": thread})
        prompt = await self._post_prompt(draft)
        draft = draft.model_copy(update={"prompt": prompt})
        self.store.put(draft)
        print(f"[Idea] Draft {draft.id} created by {author_id} ({draft.phase})")
        return draft

    # ---- 2. 回答 ----
    async def open_answer_form(self, draft_id: str, actor_id: str, trigger_id: str) -> None:
        draft = self.load(draft_id, actor_id)
        ensure_phase(draft, "awaiting_answers")
        if not draft.open_questions:
            raise InvalidPhaseError("no questions", user_message="回答する質問はありません。")
        await self.transport.open_modal(trigger_id, build_answers_modal(draft))

    def check_answerable(self, draft_id: str, actor_id: str) -> Draft:
        """モーダル送信時の事前チェック（3秒以内に応答するため同期で行う）"""
        draft = self.load(draft_id, actor_id)
        ensure_phase(draft, "awaiting_answers")
        return draft

    async def answer(self, draft_id: str, actor_id: str, answers: Dict[int, str]) -> Draft:
        """
        質問への回答でノートを再生成し、承認待ちへ進める

        Args:
            draft_id: 下書きID
            actor_id: 操作者のSlackユーザーID
            answers: {質問番号(1始まり): 回答}

        Returns:
            更新後の下書き
        """
        draft = self.check_answerable(draft_id, actor_id)
        transcript = build_transcript(draft.open_questions, answers)
        note = await self.enricher.refine(draft.raw_text, transcript, draft.author_label, draft.structured_note)

        # 生成中に期限切れになった下書きの結果は捨てる
        current = self.store.get(draft_id)
        if current is None:
            raise DraftNotFoundError(f"draft {draft_id} expired during refine")
        updated = apply_answers(current, actor_id, note, transcript)

        prompt = await self._post_prompt(updated)
        await self._retract_prompt(current)
        updated = updated.model_copy(update={"prompt": prompt})
        self.store.put(updated)
        print(f"[Idea] Draft {draft_id} refined with answers")
        return updated

    # ---- 3. スキップ ----
    async def skip(self, draft_id: str, actor_id: str) -> Draft:
        draft = self.load(draft_id, actor_id)
        updated = apply_skip(draft, actor_id)
        prompt = await self._post_prompt(updated)
        await self._retract_prompt(draft)
        updated = updated.model_copy(update={"prompt": prompt})
        self.store.put(updated)
        return updated

    # ---- 4. 承認 ----
    async def approve(self, draft_id: str, actor_id: str) -> CreatedIssue:
        """
        下書きをGitHub Issueとして投稿し、投票メッセージを作る

        Issue作成に失敗した場合は下書きを承認待ちのまま残し、ボタンを出し直す。
        Issue作成後は下書きをすぐ削除し（二重投稿防止）、残りの処理
        （投票メッセージ、コメント初期化、通知）はベストエフォートで行う。
        """
        draft = self.load(draft_id, actor_id)
        ensure_can_finish(draft, actor_id)
        await self._retract_prompt(draft)

        try:
            issue = await self.tracker.create_issue(draft.title, draft.body)
        except Exception:
            try:
                prompt = await self._post_prompt(draft)
                self.store.put(draft.model_copy(update={"prompt": prompt}))
            except UpstreamError:
                print(f"[Idea] Could not re-post approval prompt for {draft_id}")
            raise

        self.store.delete(draft_id)
        print(f"[Idea] Draft {draft_id} published as #{issue.number}")
        try:
            await self._announce_issue(draft, issue)
        except Exception as e:
            print(f"[Idea] Follow-up for #{issue.number} failed: {e}")
            print(f"[Idea] Traceback: {traceback.format_exc()}")
        return issue

    async def _announce_issue(self, draft: Draft, issue: CreatedIssue) -> None:
        """Issue作成後の投票メッセージ・投票数コメント初期化・スレッド通知"""
        vote_ref = await self._post_vote_announcement(draft, issue)
        if vote_ref:
            try:
                await self.transport.add_reaction(vote_ref, self.vote_emoji)
            except UpstreamError:
                print(f"[Vote] Seed reaction failed on {vote_ref.message_id}")
            self.links.link(vote_ref.message_id, issue.number)

        try:
            await self.tracker.upsert_vote_comment(issue.number, 0)
        except TrackerError:
            print(f"[GitHub] Vote comment init failed for #{issue.number}, next vote will create it")

        await self._notify_thread(draft, f"✅ アイデア *#{issue.number}* を作成しました - {issue.title}\n{issue.url}")

    async def _post_vote_announcement(self, draft: Draft, issue: CreatedIssue) -> Optional[MessageRef]:
        """投票メッセージを元のチャンネルに投稿（だめならスレッドに投稿）"""
        text = vote_announcement_text(issue)
        if draft.parent_channel_id:
            try:
                return await self.transport.post_message(draft.parent_channel_id, text)
            except UpstreamError:
                print(f"[Slack] Parent channel {draft.parent_channel_id} unavailable, falling back to thread")
        if draft.thread:
            try:
                return await self.transport.post_message(draft.thread.channel_id, text, thread_ts=draft.thread.ts)
            except UpstreamError:
                print(f"[Slack] Vote announcement for #{issue.number} could not be posted")
        return None

    # ---- 5. キャンセル ----
    async def cancel(self, draft_id: str, actor_id: str) -> None:
        draft = self.load(draft_id, actor_id)
        ensure_can_finish(draft, actor_id)
        await self._retract_prompt(draft)
        self.store.delete(draft_id)
        await self._notify_thread(draft, "🗑️ 下書きをキャンセルしました。")
        print(f"[Idea] Draft {draft_id} cancelled")

    # =========================
    # Slackからの入口（エラーをユーザー向けメッセージに変換）
    # =========================
    async def _report(self, channel_id: str, user_id: str, e: Exception) -> None:
        if isinstance(e, IdeaFlowError):
            message = e.user_message
        else:
            print(f"[Idea] Unexpected error: {e}")
            print(f"[Idea] Traceback: {traceback.format_exc()}")
            message = IdeaFlowError.user_message
        if channel_id:
            await self.transport.post_ephemeral(channel_id, user_id, message)

    async def handle_submit(self, raw_text: str, author_id: str, author_label: str, channel_id: str) -> None:
        try:
            await self.submit(raw_text, author_id, author_label, channel_id)
        except Exception as e:
            await self._report(channel_id, author_id, e)

    async def handle_action(self, action_id: str, actor_id: str, channel_id: str, trigger_id: str = "") -> None:
        """
        ボタン操作を処理する（名前空間外・未知のアクションは無視）

        Args:
            action_id: 'idea:<action>:<draft_id>'
            actor_id: 押したユーザー
            channel_id: ボタンがあったチャンネル（エラー通知先）
            trigger_id: モーダルを開くためのトリガー
        """
        parsed = parse_action_id(action_id)
        if parsed is None or parsed[0] not in ACTIONS:
            return
        action, draft_id = parsed
        try:
            if action == "answer":
                await self.open_answer_form(draft_id, actor_id, trigger_id)
            elif action == "skip":
                await self.skip(draft_id, actor_id)
            elif action == "approve":
                issue = await self.approve(draft_id, actor_id)
                await self.transport.post_ephemeral(channel_id, actor_id, f"完了しました。アイデア #{issue.number} を投稿しました。")
            elif action == "cancel":
                await self.cancel(draft_id, actor_id)
        except Exception as e:
            await self._report(channel_id, actor_id, e)

    async def handle_answers(self, draft_id: str, actor_id: str, answers: Dict[int, str], channel_id: str) -> None:
        try:
            await self.answer(draft_id, actor_id, answers)
        except Exception as e:
            await self._report(channel_id, actor_id, e)
