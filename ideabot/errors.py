"""
アイデアフローのエラー定義
各エラーはユーザーに表示するメッセージを持つ
"""


class IdeaFlowError(Exception):
    """フロー中にユーザーへ返すべきエラーの基底クラス"""
    user_message = "❌ 処理に失敗しました。もう一度お試しください。"

    def __init__(self, detail: str = "", user_message: str = ""):
        super().__init__(detail or self.user_message)
        if user_message:
            self.user_message = user_message


class DraftNotFoundError(IdeaFlowError):
    user_message = "❌ この下書きは期限切れです。もう一度 /idea から投稿してください。"


class NotAuthorizedError(IdeaFlowError):
    user_message = "⛔ この操作は投稿者本人のみ行えます。"


class InvalidPhaseError(IdeaFlowError):
    user_message = "⚠️ この下書きでは現在その操作はできません。"


class UsageError(IdeaFlowError):
    user_message = "❗ 使い方: `/idea <アイデアの内容>`"


class UpstreamError(IdeaFlowError):
    """外部サービス（OpenAI / GitHub / Slack）の呼び出し失敗"""
    user_message = "❌ 外部サービスとの通信に失敗しました。時間をおいて再度お試しください。"


class EnrichmentError(UpstreamError):
    pass


class TrackerError(UpstreamError):
    pass


class ChatTransportError(UpstreamError):
    pass
