"""
ストレージユーティリティ
下書きと投票メッセージの対応表をメモリ上で管理する（再起動で消える）
"""
import asyncio
import sys
import time
import traceback
from typing import Callable, Dict, List, Optional

from ideabot.models import Draft


class DraftStore:
    """
    投稿前の下書きを保持するストア

    作成から ttl_seconds 経過した下書きはフェーズに関係なく存在しない扱いになる。
    ロックは持たない（イベントループ上からのみ操作される前提）。
    """

    def __init__(self, ttl_seconds: float = 600, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._drafts: Dict[str, Draft] = {}

    def now(self) -> float:
        return self._clock()

    def _expired(self, draft: Draft, now: float) -> bool:
        return now - draft.created_at >= self.ttl_seconds

    def put(self, draft: Draft) -> None:
        """下書きを保存（同じIDは上書き）"""
        self._drafts[draft.id] = draft

    def get(self, draft_id: str) -> Optional[Draft]:
        """
        下書きを取得する

        Args:
            draft_id: 下書きID

        Returns:
            下書き。未登録・期限切れの場合は None
        """
        draft = self._drafts.get(draft_id)
        if draft is None:
            return None
        if self._expired(draft, self.now()):
            # 掃除を待たずに期限切れとして扱う
            self._drafts.pop(draft_id, None)
            return None
        return draft

    def delete(self, draft_id: str) -> None:
        self._drafts.pop(draft_id, None)

    def sweep(self, now: Optional[float] = None) -> List[str]:
        """
        期限切れの下書きを削除

        Returns:
            削除した下書きIDのリスト
        """
        now = self.now() if now is None else now
        expired = [i for i, d in self._drafts.items() if self._expired(d, now)]
        for draft_id in expired:
            self._drafts.pop(draft_id, None)
        return expired

    def __len__(self) -> int:
        return len(self._drafts)


class VoteLinkTable:
    """投票メッセージID → Issue番号 の対応表（一度登録したら変更しない）"""

    def __init__(self):
        self._links: Dict[str, int] = {}

    def link(self, message_id: str, issue_number: int) -> None:
        if message_id in self._links:
            print(f"[Vote] Message {message_id} already linked to #{self._links[message_id]}, skipping")
            return
        self._links[message_id] = issue_number

    def resolve(self, message_id: str) -> Optional[int]:
        return self._links.get(message_id)

    def __len__(self) -> int:
        return len(self._links)


async def run_sweeper(store: DraftStore, interval: float):
    """
    一定間隔で期限切れの下書きを掃除するタスク
    """
    print(f"[Drafts] Sweeper started. Interval: {interval} seconds, TTL: {store.ttl_seconds} seconds")
    sys.stdout.flush()

    while True:
        try:
            await asyncio.sleep(interval)
            removed = store.sweep()
            if removed:
                print(f"[Drafts] Expired {len(removed)} draft(s): {', '.join(removed)}")
                sys.stdout.flush()
        except asyncio.CancelledError:
            print("[Drafts] Sweeper cancelled")
            sys.stdout.flush()
            break
        except Exception as e:
            print(f"[Drafts] Error in sweeper: {e}")
            print(f"[Drafts] Traceback: {traceback.format_exc()}")
            sys.stdout.flush()
