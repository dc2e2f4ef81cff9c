"""
データモデル定義
"""
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


Phase = Literal["awaiting_answers", "awaiting_approval"]


class Scope(BaseModel):
    """作業範囲（クライアント / サーバー / データベース）"""
    client: List[str] = Field(default_factory=list)
    server: List[str] = Field(default_factory=list)
    database: List[str] = Field(default_factory=list)


class StructuredNote(BaseModel):
    """LLMが生成する構造化デザインノート"""
    title: str = ""
    summary: str = ""
    gameplay_impact: str = ""
    scope: Scope = Field(default_factory=Scope)
    implementation_notes: List[str] = Field(default_factory=list)
    risks: List[str] = Field(default_factory=list)
    telemetry: List[str] = Field(default_factory=list)
    anti_cheat: List[str] = Field(default_factory=list)
    dependencies: List[str] = Field(default_factory=list)
    open_questions: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)


class MessageRef(BaseModel):
    """Slackメッセージの位置（チャンネルID + ts）"""
    channel_id: str
    ts: str

    @property
    def message_id(self) -> str:
        return f"{self.channel_id}:{self.ts}"


class Draft(BaseModel):
    """投稿前のアイデア下書き"""
    id: str
    author_id: str
    author_label: str = ""
    raw_text: str
    title: str = ""
    body: str = ""
    structured_note: Optional[StructuredNote] = None
    open_questions: List[str] = Field(default_factory=list)
    answers_text: str = ""
    phase: Phase = "awaiting_approval"
    created_at: float
    parent_channel_id: str = ""
    thread: Optional[MessageRef] = None   # アイデア用スレッドの親メッセージ
    prompt: Optional[MessageRef] = None   # 直近のボタン付きメッセージ


class CreatedIssue(BaseModel):
    """作成されたGitHub Issue"""
    number: int
    title: str
    url: str = ""


class IdeaIssue(BaseModel):
    """ランキング対象のオープンなアイデア"""
    number: int
    title: str
    url: str = ""
    votes: int = 0
    labels: List[str] = Field(default_factory=list)
