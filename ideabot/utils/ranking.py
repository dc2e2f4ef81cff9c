"""
アイデアのランキング
スコア = 👍数 + 優先度ラベルの重み
"""
import re
from typing import Iterable, List

from ideabot.models import IdeaIssue

PRIORITY_LABEL_RE = re.compile(r"^P[1-5]$")
PRIORITY_WEIGHTS = {1: 50, 2: 30, 3: 15, 4: 5, 5: 1}


def priority_weight(labels: Iterable[str]) -> int:
    """最初に見つかった P1..P5 ラベルの重み（なければ0）"""
    for name in labels:
        if name and PRIORITY_LABEL_RE.match(name):
            return PRIORITY_WEIGHTS[int(name[1])]
    return 0


def idea_score(idea: IdeaIssue) -> int:
    return idea.votes + priority_weight(idea.labels)


def rank_ideas(ideas: Iterable[IdeaIssue]) -> List[IdeaIssue]:
    """スコアの降順、同点ならIssue番号の昇順（古い順）"""
    return sorted(ideas, key=lambda i: (-idea_score(i), i.number))
