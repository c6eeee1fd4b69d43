"""
API接続チェックサービス
会話モデルのAPIの接続状態をチェックする
"""
from typing import Dict, List

from openai import OpenAI

from companion.config import get_api_key, get_model_name


class APICheckService:
    """API接続状態をチェックするサービスクラス"""

    def check_openai_api(self) -> Dict[str, str]:
        """
        OpenAI APIの接続状態をチェック

        Returns:
            API名と状態を含む辞書
        """
        api_key: str | None = get_api_key()

        if not api_key:
            return {
                "name": "OpenAI API",
                "status": "不明",
                "message": "APIキーが設定されていません"
            }

        try:
            client = OpenAI(api_key=api_key)
        except Exception as e:
            return {
                "name": "OpenAI API",
                "status": "エラー",
                "message": f"初期化エラー: {str(e)}"
            }

        # 使用するモデルを取得して接続とモデル名の両方を確認
        model: str = get_model_name()
        try:
            client.models.retrieve(model)
        except Exception as e:
            return {
                "name": "OpenAI API",
                "status": "エラー",
                "message": f"API接続エラー ({model}): {str(e)}"
            }
        return {
            "name": "OpenAI API",
            "status": "利用可能",
            "message": f"APIキーが有効です ({model})"
        }

    def check_all_apis(self) -> List[Dict[str, str]]:
        """
        全てのAPIの接続状態をチェック

        Returns:
            API状態のリスト
        """
        return [self.check_openai_api()]
