"""
スラッシュコマンドサービス
/ideas（上位アイデア一覧）と /priority（優先度ラベル設定）
"""
import asyncio
from typing import List, Tuple

from ideabot.errors import UsageError
from ideabot.models import IdeaIssue
from ideabot.services.github_service import TrackerClient
from ideabot.utils.ranking import rank_ideas

DEFAULT_TOP_COUNT = 5
MAX_TOP_COUNT = 20
LIST_LIMIT = 100


def parse_top_count(text: str) -> int:
    """'/ideas 10' の件数（1..20 に丸める、省略時5）"""
    arg = (text or "").strip().split()
    if not arg:
        return DEFAULT_TOP_COUNT
    try:
        count = int(arg[0])
    except ValueError:
        raise UsageError("bad count", user_message="❗ 使い方: `/ideas [件数 1-20]`")
    return max(1, min(count, MAX_TOP_COUNT))


def parse_priority_args(text: str) -> Tuple[int, int]:
    """'/priority 12 2' → (12, 2)"""
    usage = "❗ 使い方: `/priority <Issue番号> <1-5>`"
    parts = (text or "").replace("#", "").split()
    if len(parts) != 2:
        raise UsageError("bad priority args", user_message=usage)
    try:
        issue_number, level = int(parts[0]), int(parts[1])
    except ValueError:
        raise UsageError("bad priority args", user_message=usage)
    if not 1 <= level <= 5:
        raise UsageError("bad priority level", user_message=usage)
    return issue_number, level


async def top_ideas(tracker: TrackerClient, count: int) -> List[IdeaIssue]:
    """
    オープンなアイデアを投票数コメントの値 + 優先度でランキングする

    Args:
        tracker: GitHubクライアント
        count: 上位何件を返すか

    Returns:
        ランキング上位のアイデア
    """
    ideas = await tracker.list_open_ideas(LIST_LIMIT)
    votes = await asyncio.gather(*(tracker.read_vote_comment(i.number) for i in ideas))
    with_votes = [i.model_copy(update={"votes": v}) for i, v in zip(ideas, votes)]
    return rank_ideas(with_votes)[:count]
