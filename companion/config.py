"""
アプリケーション設定
"""
import logging
import os
import sys
from pathlib import Path


def get_app_data_dir() -> Path:
    """
    アプリケーションのデータディレクトリを取得

    Returns:
        アプリケーションデータディレクトリのパス
    """
    # テストや複数プロファイル用に環境変数で上書きできる
    override: str | None = os.getenv("COMPANION_DATA_DIR")
    if override:
        return Path(override)
    if sys.platform == "win32":
        # Windowsの場合、AppData\Local\FrenchCompanionを使用
        app_data: str | None = os.getenv("LOCALAPPDATA")
        if app_data:
            return Path(app_data) / "FrenchCompanion"
    elif sys.platform == "darwin":
        # macOSの場合、~/Library/Application Support/FrenchCompanionを使用
        return Path.home() / "Library" / "Application Support" / "FrenchCompanion"
    # その他のOSまたはフォールバック
    return Path.home() / ".french_companion"


def get_config_file() -> Path:
    """
    設定ファイルのパスを取得

    Returns:
        設定ファイルのパス
    """
    return get_app_data_dir() / "settings.json"


def get_log_file() -> Path:
    """
    ログファイルのパスを取得

    Returns:
        ログファイルのパス
    """
    return get_app_data_dir() / "app.log"


def get_api_key() -> str | None:
    """OPENAI_API_KEYまたはOPENAI_APIのどちらかをサポート"""
    return os.getenv("OPENAI_API_KEY") or os.getenv("OPENAI_API")


def get_model_name() -> str:
    """使用するモデル名を取得"""
    return os.getenv("OPENAI_MODEL", DEFAULT_MODEL)


def setup_logging(level: int = logging.INFO, log_file: Path | None = None) -> None:
    """
    ログ出力を設定（ファイルと標準エラー出力）

    Args:
        level: ログレベル
        log_file: ログファイルのパス（指定しない場合はLOG_FILE）
    """
    target: Path = log_file or LOG_FILE
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(target, encoding="utf-8"))
    except OSError as e:
        print(f"ログファイルを作成できませんでした: {e}")
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )


# アプリケーションデータディレクトリ
APP_DATA_DIR = get_app_data_dir()

# 設定ファイル
CONFIG_FILE = get_config_file()

# ログファイル
LOG_FILE = get_log_file()

# 会話モデル
DEFAULT_MODEL = "gpt-4o-mini"

# レート制限時の再試行（最大2回、1秒から倍々で待機）
MAX_RATE_LIMIT_RETRIES = 2
INITIAL_BACKOFF_SECONDS = 1.0

# 保存データ（blob）のファイル名
VOCABULARY_BLOB = "vocabulary_bank.json"
PROGRESSION_BLOB = "progression.json"
SETTINGS_BLOB = CONFIG_FILE.name
