"""
設定のテスト
"""
import logging
import os
from unittest.mock import patch

from companion import config


class TestConfig:
    """設定のテストクラス"""

    @patch.dict(os.environ, {"COMPANION_DATA_DIR": "/tmp/companion-test"})
    def test_data_dir_override(self):
        """環境変数でデータディレクトリを上書きできる"""
        assert str(config.get_app_data_dir()) == "/tmp/companion-test"
        assert config.get_config_file().name == "settings.json"
        assert config.get_log_file().name == "app.log"

    @patch.dict(os.environ, {}, clear=True)
    def test_defaults(self):
        assert config.get_api_key() is None
        assert config.get_model_name() == config.DEFAULT_MODEL

    @patch.dict(os.environ, {"OPENAI_API_KEY": "primary", "OPENAI_API": "legacy"})
    def test_api_key_prefers_primary(self):
        assert config.get_api_key() == "primary"

    def test_setup_logging(self, tmp_path):
        """ログファイルとレベルを設定する"""
        log_file = tmp_path / "logs" / "app.log"
        try:
            config.setup_logging(logging.DEBUG, log_file)
            logging.getLogger("companion.test").debug("bonjour")

            assert logging.getLogger().level == logging.DEBUG
            for handler in logging.getLogger().handlers:
                handler.flush()
            assert "bonjour" in log_file.read_text(encoding="utf-8")
        finally:
            for handler in list(logging.getLogger().handlers):
                handler.close()
                logging.getLogger().removeHandler(handler)
