"""
アプリケーション設定管理モジュール
環境変数の読み込み、クライアント初期化
"""
import os

from dotenv import load_dotenv
from github import Auth, Github
from openai import OpenAI
from slack_sdk import WebClient

# 環境変数の読み込み
load_dotenv()

# =========================
# 環境変数から設定を読み込み
# =========================

# OpenAI設定
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

# Slack設定
SLACK_BOT_TOKEN = os.getenv("SLACK_BOT_TOKEN", "")
SLACK_SIGNING_SECRET = os.getenv("SLACK_SIGNING_SECRET", "")
# /priority を実行できるユーザー（カンマ区切り、空なら全員）
SLACK_ADMIN_USER_IDS = [u.strip() for u in os.getenv("SLACK_ADMIN_USER_IDS", "").split(",") if u.strip()]

# GitHub設定
GITHUB_TOKEN = os.getenv("GITHUB_TOKEN", "")
GITHUB_OWNER = os.getenv("GITHUB_OWNER", "")
GITHUB_REPO = os.getenv("GITHUB_REPO", "")
IDEA_LABEL = os.getenv("IDEA_LABEL", "idea")

# 投票設定（Slackの絵文字名、👍 は "+1"）
VOTE_EMOJI = os.getenv("VOTE_EMOJI", "+1")

# 下書きの有効期限（秒、デフォルト10分）
DRAFT_TTL_SECONDS = int(os.getenv("DRAFT_TTL_SECONDS", "600"))
# 期限切れ下書きの掃除間隔（秒、デフォルト1分）
DRAFT_SWEEP_INTERVAL = int(os.getenv("DRAFT_SWEEP_INTERVAL", "60"))

# =========================
# 設定の検証
# =========================
if not OPENAI_API_KEY:
    raise RuntimeError("OPENAI_API_KEY が未設定です。")
if not SLACK_BOT_TOKEN:
    raise RuntimeError("SLACK_BOT_TOKEN が未設定です。")
if not GITHUB_TOKEN or not GITHUB_OWNER or not GITHUB_REPO:
    raise RuntimeError("GITHUB_TOKEN / GITHUB_OWNER / GITHUB_REPO が未設定です。")
if not SLACK_SIGNING_SECRET:
    print("⚠️ SLACK_SIGNING_SECRET が未設定です。リクエスト署名の検証はスキップされます。")

# =========================
# クライアント初期化
# =========================
client_oa = OpenAI(api_key=OPENAI_API_KEY)
client_slack = WebClient(token=SLACK_BOT_TOKEN)
client_github = Github(auth=Auth.Token(GITHUB_TOKEN))
GITHUB_REPO_ID = f"{GITHUB_OWNER}/{GITHUB_REPO}"
