"""
GitHubサービスモジュール
Issue作成、投票数コメントの更新、優先度ラベル、アイデア一覧を提供

PyGithub は同期APIなので、すべて asyncio.to_thread() 経由で呼び出す。
"""
import asyncio
import re
from functools import cached_property
from typing import List, Optional

import requests
from github import Github, GithubException
from github.Issue import Issue
from github.IssueComment import IssueComment
from github.Repository import Repository

from ideabot.config import GITHUB_REPO_ID, IDEA_LABEL, client_github
from ideabot.errors import TrackerError
from ideabot.models import CreatedIssue, IdeaIssue
from ideabot.utils.ranking import PRIORITY_LABEL_RE

# ボットが管理する投票数コメントはこの接頭辞で始まる（Issueごとに1件だけ）
VOTE_COMMENT_PREFIX = "Slack votes:"
VOTE_COMMENT_RE = re.compile(r"^Slack votes:\s*(\d+)", re.IGNORECASE)

PRIORITY_COLORS = {1: "e11d48", 2: "f97316", 3: "eab308", 4: "22c55e", 5: "3b82f6"}


class TrackerClient:
    """アイデアを管理するGitHubリポジトリのクライアント"""

    def __init__(self, client: Optional[Github] = None, repo_id: str = GITHUB_REPO_ID,
                 idea_label: str = IDEA_LABEL):
        self._client = client or client_github
        self._repo_id = repo_id
        self.idea_label = idea_label

    @cached_property
    def _repo(self) -> Repository:
        return self._client.get_repo(self._repo_id)

    @cached_property
    def _login(self) -> str:
        """トークン所有者（ボット）のログイン名"""
        return self._client.get_user().login

    def _find_vote_comment(self, issue: Issue) -> Optional[IssueComment]:
        for comment in issue.get_comments():
            body = comment.body or ""
            if comment.user and comment.user.login == self._login and body.startswith(VOTE_COMMENT_PREFIX):
                return comment
        return None

    async def _run(self, what: str, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except GithubException as e:
            print(f"[GitHub] {what} failed: {e.status} {e.data}")
            raise TrackerError(f"{what} failed: {e.status}") from e
        except requests.exceptions.RequestException as e:
            # タイムアウト・接続断など（PyGithub は requests の例外をそのまま投げる）
            print(f"[GitHub] {what} failed: {type(e).__name__}: {e}")
            raise TrackerError(f"{what} failed: {type(e).__name__}") from e

    async def create_issue(self, title: str, body: str) -> CreatedIssue:
        """アイデアラベル付きでIssueを作成"""

        def _sync() -> CreatedIssue:
            issue = self._repo.create_issue(title=title, body=body, labels=[self.idea_label])
            return CreatedIssue(number=issue.number, title=issue.title, url=issue.html_url)

        created = await self._run("create_issue", _sync)
        print(f"[GitHub] Issue created: #{created.number} {created.url}")
        return created

    async def upsert_vote_comment(self, issue_number: int, count: int) -> None:
        """
        投票数コメントを作成または更新する（同じIssueに2件目は作らない）

        Args:
            issue_number: Issue番号
            count: 投票数
        """
        body = f"{VOTE_COMMENT_PREFIX} {count}"

        def _sync() -> None:
            issue = self._repo.get_issue(issue_number)
            existing = self._find_vote_comment(issue)
            if existing:
                existing.edit(body)
            else:
                issue.create_comment(body)

        await self._run("upsert_vote_comment", _sync)

    async def read_vote_comment(self, issue_number: int) -> int:
        """投票数コメントの値（コメントがなければ0）"""

        def _sync() -> int:
            existing = self._find_vote_comment(self._repo.get_issue(issue_number))
            if not existing:
                return 0
            m = VOTE_COMMENT_RE.match(existing.body or "")
            return int(m.group(1)) if m else 0

        return await self._run("read_vote_comment", _sync)

    async def set_priority_label(self, issue_number: int, level: int) -> None:
        """
        優先度ラベル P1..P5 を設定する

        ラベルがなければ作成し、Issue上の既存の優先度ラベルを置き換える。
        優先度以外のラベルはそのまま残す。
        """
        if level not in PRIORITY_COLORS:
            raise ValueError(f"priority level must be 1..5, got {level}")
        label = f"P{level}"

        def _sync() -> None:
            try:
                self._repo.create_label(name=label, color=PRIORITY_COLORS[level],
                                        description=f"Priority {level}")
            except GithubException as e:
                # 422 = 既に存在する
                if e.status != 422:
                    raise
            issue = self._repo.get_issue(issue_number)
            others = [l.name for l in issue.labels if not PRIORITY_LABEL_RE.match(l.name or "")]
            issue.set_labels(*others, label)

        await self._run("set_priority_label", _sync)
        print(f"[GitHub] Priority {label} set on #{issue_number}")

    async def list_open_ideas(self, limit: int) -> List[IdeaIssue]:
        """アイデアラベル付きのオープンなIssue（新しい順、最大 limit 件）"""

        def _sync() -> List[IdeaIssue]:
            ideas: List[IdeaIssue] = []
            for issue in self._repo.get_issues(state="open", labels=[self.idea_label]):
                if len(ideas) >= limit:
                    break
                if issue.pull_request is not None:
                    continue
                ideas.append(IdeaIssue(
                    number=issue.number,
                    title=issue.title,
                    url=issue.html_url,
                    labels=[l.name for l in issue.labels],
                ))
            return ideas

        return await self._run("list_open_ideas", _sync)
