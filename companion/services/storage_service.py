"""
ローカルストレージサービス
ユーザー認証不要で、単語帳と進捗をローカルファイル（JSON）にまとめて保存する
"""
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, List

from pydantic import TypeAdapter, ValidationError

from companion.config import APP_DATA_DIR, PROGRESSION_BLOB, SETTINGS_BLOB, VOCABULARY_BLOB
from companion.models.schemas import ProgressionState, UserSettings, VocabularyBankEntry

logger = logging.getLogger(__name__)

_VOCABULARY_ADAPTER = TypeAdapter(List[VocabularyBankEntry])


class LocalStorageService:
    """ローカルファイルにデータを丸ごと保存・読み込むサービスクラス"""

    def __init__(self, data_dir: Path | None = None) -> None:
        """
        初期化処理
        データ保存ディレクトリを作成する

        Args:
            data_dir: 保存先ディレクトリ（指定しない場合はAPP_DATA_DIR）
        """
        self.data_dir: Path = data_dir or APP_DATA_DIR
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def save_blob(self, name: str, data: Any) -> bool:
        """
        データをJSONファイルとして保存

        一時ファイルに書き出してから置き換えるため、途中までの書き込みは見えない

        Args:
            name: ファイル名
            data: 保存するデータ（JSONに変換できる値）

        Returns:
            保存成功時True、失敗時False
        """
        file_path: Path = self.data_dir / name
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.data_dir, prefix=f".{name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, ensure_ascii=False, indent=2)
                os.replace(tmp_name, file_path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.error("データの保存に失敗しました %s: %s", name, e)
            return False

    def load_blob(self, name: str) -> Any | None:
        """
        JSONファイルからデータを読み込む

        Args:
            name: ファイル名

        Returns:
            読み込んだデータ、存在しない・読み込み失敗時はNone
        """
        file_path: Path = self.data_dir / name
        if not file_path.exists():
            return None
        try:
            with open(file_path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.error("データの読み込みに失敗しました %s: %s", name, e)
            return None

    def load_vocabulary(self) -> List[VocabularyBankEntry]:
        """
        単語帳を読み込む

        Returns:
            単語帳の項目リスト（存在しない・不正な場合は空）
        """
        data = self.load_blob(VOCABULARY_BLOB)
        if data is None:
            return []
        try:
            return _VOCABULARY_ADAPTER.validate_python(data)
        except ValidationError as e:
            logger.error("単語帳のデータが不正なため初期状態を使用します: %s", e)
            return []

    def save_vocabulary(self, entries: List[VocabularyBankEntry]) -> bool:
        """単語帳を丸ごと保存"""
        return self.save_blob(VOCABULARY_BLOB, _VOCABULARY_ADAPTER.dump_python(entries, mode="json"))

    def load_progression(self) -> ProgressionState:
        """
        進捗を読み込む

        Returns:
            進捗（存在しない・不正な場合は初期値）
        """
        data = self.load_blob(PROGRESSION_BLOB)
        if data is None:
            return ProgressionState()
        try:
            return ProgressionState.model_validate(data)
        except ValidationError as e:
            logger.error("進捗データが不正なため初期状態を使用します: %s", e)
            return ProgressionState()

    def save_progression(self, progression: ProgressionState) -> bool:
        """進捗を丸ごと保存"""
        return self.save_blob(PROGRESSION_BLOB, progression.model_dump(mode="json"))

    def load_settings(self) -> UserSettings:
        """ユーザー設定を読み込む（存在しない・不正な場合は初期値）"""
        data = self.load_blob(SETTINGS_BLOB)
        if data is None:
            return UserSettings()
        try:
            return UserSettings.model_validate(data)
        except ValidationError as e:
            logger.error("設定データが不正なため初期状態を使用します: %s", e)
            return UserSettings()

    def save_settings(self, settings: UserSettings) -> bool:
        """ユーザー設定を保存"""
        return self.save_blob(SETTINGS_BLOB, settings.model_dump(mode="json"))
