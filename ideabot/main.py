import asyncio
import json
import sys
import traceback

from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from ideabot.config import DRAFT_SWEEP_INTERVAL, DRAFT_TTL_SECONDS, SLACK_ADMIN_USER_IDS
from ideabot.errors import IdeaFlowError
from ideabot.services.command_service import parse_priority_args, parse_top_count, top_ideas
from ideabot.services.github_service import TrackerClient
from ideabot.services.idea_service import IdeaController, parse_action_id
from ideabot.services.openai_service import EnrichmentGateway
from ideabot.services.slack_service import (
    ANSWERS_CALLBACK_ID,
    SlackTransport,
    build_notice_view,
    build_top_ideas_blocks,
    parse_modal_answers,
    verify_slack_signature,
)
from ideabot.services.vote_service import REACTION_EVENTS, VoteReconciler
from ideabot.utils.storage import DraftStore, VoteLinkTable, run_sweeper

# =========================
# グローバル変数（メモリ管理）
# =========================
DRAFTS = DraftStore(ttl_seconds=DRAFT_TTL_SECONDS)
VOTE_LINKS = VoteLinkTable()
# 期限切れ下書きの掃除タスク
_sweeper_task = None

transport = SlackTransport()
tracker = TrackerClient()
controller = IdeaController(DRAFTS, VOTE_LINKS, EnrichmentGateway(), tracker, transport)
reconciler = VoteReconciler(VOTE_LINKS, tracker, transport)

app = FastAPI(title="Idea Bot (Slack + OpenAI + GitHub Issues)")


def _ephemeral(text: str):
    return {"response_type": "ephemeral", "text": text}


def _json_object(raw) -> dict:
    """JSONオブジェクトとして読めないリクエストは 400 を返す"""
    try:
        data = json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="JSON body must be an object")
    return data


# =========================
# アプリ起動/停止時の処理
# =========================
@app.on_event("startup")
async def startup_event():
    """
    アプリ起動時に期限切れ下書きの掃除を開始
    """
    global _sweeper_task
    _sweeper_task = asyncio.create_task(run_sweeper(DRAFTS, DRAFT_SWEEP_INTERVAL))


@app.on_event("shutdown")
async def shutdown_event():
    global _sweeper_task
    if _sweeper_task:
        _sweeper_task.cancel()
        try:
            await _sweeper_task
        except asyncio.CancelledError:
            pass
        _sweeper_task = None
        print("[Drafts] Sweeper stopped")
        sys.stdout.flush()


# =========================
# バックグラウンド処理
# =========================
async def post_top_ideas(channel_id: str, user_id: str, count: int):
    """上位アイデアを集計してチャンネルに投稿"""
    try:
        ranked = await top_ideas(tracker, count)
        await transport.post_message(channel_id, f"Top {count} Ideas", build_top_ideas_blocks(ranked, count))
    except Exception as e:
        print(f"[Slack] /ideas failed: {e}")
        print(f"[Slack] Traceback: {traceback.format_exc()}")
        message = e.user_message if isinstance(e, IdeaFlowError) else IdeaFlowError.user_message
        await transport.post_ephemeral(channel_id, user_id, f"❌ アイデア一覧の取得に失敗しました。\n{message}")


async def apply_priority(channel_id: str, user_id: str, issue_number: int, level: int):
    """優先度ラベルを設定してチャンネルに通知"""
    try:
        await tracker.set_priority_label(issue_number, level)
        await transport.post_message(channel_id, f"✅ Issue #{issue_number} に優先度 *P{level}* を設定しました。")
    except Exception as e:
        print(f"[GitHub] /priority failed: {e}")
        message = e.user_message if isinstance(e, IdeaFlowError) else IdeaFlowError.user_message
        await transport.post_ephemeral(channel_id, user_id, f"❌ 優先度の設定に失敗しました。\n{message}")


# =========================
# FastAPIエンドポイント
# =========================
@app.get("/health")
def health():
    return {"ok": True, "drafts": len(DRAFTS), "vote_links": len(VOTE_LINKS)}


@app.post("/slack/commands")
async def slack_commands(request: Request, background: BackgroundTasks,
                         x_slack_signature: str = Header(default=""),
                         x_slack_request_timestamp: str = Header(default="")):
    raw = await request.body()
    verify_slack_signature(raw, x_slack_request_timestamp, x_slack_signature)
    form = await request.form()
    command = form.get("command", "")
    text = form.get("text", "")
    user_id = form.get("user_id", "")
    channel_id = form.get("channel_id", "")

    # --- /idea <text> ---
    if command == "/idea":
        if not text.strip():
            return _ephemeral("❗ 使い方: `/idea <アイデアの内容>`")
        author_label = f"@{form.get('user_name', user_id)}"
        background.add_task(controller.handle_submit, text, user_id, author_label, channel_id)
        return _ephemeral("⏳ アイデアを整理しています。スレッドをご確認ください。")

    # --- /ideas [count] ---
    if command == "/ideas":
        try:
            count = parse_top_count(text)
        except IdeaFlowError as e:
            return _ephemeral(e.user_message)
        background.add_task(post_top_ideas, channel_id, user_id, count)
        return _ephemeral(f"⏳ 上位 {count} 件を集計しています…")

    # --- /priority <issue> <level> ---
    if command == "/priority":
        if SLACK_ADMIN_USER_IDS and user_id not in SLACK_ADMIN_USER_IDS:
            return _ephemeral("⛔ 優先度の設定はメンテナーのみ行えます。")
        try:
            issue_number, level = parse_priority_args(text)
        except IdeaFlowError as e:
            return _ephemeral(e.user_message)
        background.add_task(apply_priority, channel_id, user_id, issue_number, level)
        return _ephemeral(f"⏳ Issue #{issue_number} に P{level} を設定しています…")

    return _ephemeral(f"Unknown command: {command}")


@app.post("/slack/actions")
async def slack_actions(request: Request, background: BackgroundTasks,
                        x_slack_signature: str = Header(default=""),
                        x_slack_request_timestamp: str = Header(default="")):
    raw = await request.body()
    verify_slack_signature(raw, x_slack_request_timestamp, x_slack_signature)
    form = await request.form()
    payload = _json_object(form.get("payload") or "")
    ptype = payload.get("type")
    user_id = payload.get("user", {}).get("id", "")

    # --- ボタン ---
    if ptype == "block_actions":
        action_id = payload["actions"][0].get("action_id", "")
        parsed = parse_action_id(action_id)
        if parsed is None:
            return JSONResponse({})
        channel_id = payload.get("channel", {}).get("id") or payload.get("container", {}).get("channel_id", "")
        trigger_id = payload.get("trigger_id", "")
        if parsed[0] == "answer":
            # trigger_id は3秒で失効するのでモーダルはここで開く
            await controller.handle_action(action_id, user_id, channel_id, trigger_id)
        else:
            background.add_task(controller.handle_action, action_id, user_id, channel_id, trigger_id)
        return JSONResponse({})

    # --- モーダル送信（質問への回答）---
    if ptype == "view_submission" and payload["view"].get("callback_id") == ANSWERS_CALLBACK_ID:
        draft_id = payload["view"].get("private_metadata", "")
        try:
            draft = controller.check_answerable(draft_id, user_id)
        except IdeaFlowError as e:
            return JSONResponse({"response_action": "update", "view": build_notice_view(e.user_message)})
        answers = parse_modal_answers(payload["view"].get("state", {}).get("values", {}))
        channel_id = draft.thread.channel_id if draft.thread else draft.parent_channel_id
        background.add_task(controller.handle_answers, draft_id, user_id, answers, channel_id)
        return JSONResponse({"response_action": "clear"})

    return JSONResponse({})


@app.post("/slack/events")
async def slack_events(request: Request, background: BackgroundTasks,
                       x_slack_signature: str = Header(default=""),
                       x_slack_request_timestamp: str = Header(default="")):
    raw = await request.body()
    verify_slack_signature(raw, x_slack_request_timestamp, x_slack_signature)
    body = _json_object(raw or b"{}")

    if body.get("type") == "url_verification":
        return {"challenge": body.get("challenge", "")}

    if body.get("type") == "event_callback":
        event = body.get("event", {})
        if event.get("type") in REACTION_EVENTS:
            background.add_task(reconciler.handle_reaction, event)
    return {"ok": True}
