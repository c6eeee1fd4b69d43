"""
レスポンス形状（スキーマ）定義
リクエスト作成と応答検証の両方で同じ形状オブジェクトを共有する
"""
from dataclasses import dataclass
from typing import Any, Dict, Generic, List, Type, TypeVar

from pydantic import BaseModel

from companion.models.schemas import SessionReview, TutorReply

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass(frozen=True)
class FieldSpec:
    """形状の1フィールド（名前、型、必須かどうか）"""

    name: str
    type_name: str
    required: bool


class ResponseShape(Generic[ModelT]):
    """モデル応答が満たすべき形状"""

    def __init__(self, name: str, model: Type[ModelT]) -> None:
        """
        初期化処理

        Args:
            name: 形状の名前（response_formatのスキーマ名として使用）
            model: 形状を表すpydanticモデル
        """
        self.name: str = name
        self.model: Type[ModelT] = model

    @property
    def fields(self) -> List[FieldSpec]:
        """フィールド名と必須/任意、型の一覧"""
        specs: List[FieldSpec] = []
        for field_name, info in self.model.model_fields.items():
            annotation = info.annotation
            type_name = getattr(annotation, "__name__", None) or repr(annotation)
            specs.append(FieldSpec(name=field_name, type_name=type_name, required=info.is_required()))
        return specs

    @property
    def required_fields(self) -> List[str]:
        return [spec.name for spec in self.fields if spec.required]

    def json_schema(self) -> Dict[str, Any]:
        """JSON Schemaを生成"""
        return self.model.model_json_schema()

    def response_format(self) -> Dict[str, Any]:
        """
        OpenAI APIのresponse_formatを作成

        Returns:
            json_schema形式のresponse_format
        """
        # 任意フィールドを省略可能なままにするためstrictは使わない
        return {
            "type": "json_schema",
            "json_schema": {
                "name": self.name,
                "schema": self.json_schema(),
                "strict": False,
            },
        }

    def parse(self, raw_text: str) -> ModelT:
        """
        応答テキストを形状に沿って検証

        Args:
            raw_text: モデルが返したJSONテキスト

        Returns:
            検証済みのモデルインスタンス

        Raises:
            pydantic.ValidationError: JSONが不正、または形状に合わない場合
        """
        return self.model.model_validate_json(raw_text.strip())


# チューターの会話応答
TUTOR_REPLY_SHAPE: ResponseShape[TutorReply] = ResponseShape("tutor_reply", TutorReply)

# セッション終了時の分析
SESSION_REVIEW_SHAPE: ResponseShape[SessionReview] = ResponseShape("session_review", SessionReview)
