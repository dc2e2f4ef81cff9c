"""
投票同期サービス
Slackの 👍 リアクションを数え直し、GitHub Issue の投票数コメントに反映する
"""
import traceback
from typing import Optional

from ideabot.config import VOTE_EMOJI
from ideabot.models import MessageRef
from ideabot.services.github_service import TrackerClient
from ideabot.services.slack_service import SlackTransport, base_emoji
from ideabot.utils.storage import VoteLinkTable

REACTION_EVENTS = ("reaction_added", "reaction_removed")


def reconciled_vote_count(reaction_total: int) -> int:
    """ボット自身が付けた最初の 👍 を除いた投票数（0未満にはしない）"""
    return max((reaction_total or 0) - 1, 0)


class VoteReconciler:
    """
    reaction_added / reaction_removed イベントごとに投票数を再計算して上書きする

    同じIssueへのイベントが並行しても、それぞれが最新の総数から計算し直すので
    最終的には正しい値に収束する。
    """

    def __init__(self, links: VoteLinkTable, tracker: TrackerClient, transport: SlackTransport,
                 emoji: str = VOTE_EMOJI):
        self.links = links
        self.tracker = tracker
        self.transport = transport
        self.emoji = emoji

    async def handle_reaction(self, event: dict) -> Optional[int]:
        """
        Slackのリアクションイベントを処理

        Args:
            event: Events API の event（type, user, reaction, item）

        Returns:
            GitHubに反映した投票数。対象外のイベントなら None
        """
        if event.get("type") not in REACTION_EVENTS:
            return None
        if base_emoji(event.get("reaction", "")) != self.emoji:
            return None
        item = event.get("item") or {}
        if item.get("type") != "message":
            return None

        ref = MessageRef(channel_id=item.get("channel", ""), ts=item.get("ts", ""))
        issue_number = self.links.resolve(ref.message_id)
        if issue_number is None:
            return None

        try:
            if await self.transport.is_bot_user(event.get("user", "")):
                return None
            total = await self.transport.reaction_count(ref.channel_id, ref.ts, self.emoji)
            votes = reconciled_vote_count(total)
            await self.tracker.upsert_vote_comment(issue_number, votes)
        except Exception as e:
            print(f"[Vote] Failed to sync votes for #{issue_number}: {e}")
            print(f"[Vote] Traceback: {traceback.format_exc()}")
            return None

        print(f"[Vote] #{issue_number} -> {votes} vote(s)")
        return votes
