"""
テスト共通のフィクスチャ
"""
import json
from datetime import date
from typing import Any, Dict, List
from unittest.mock import AsyncMock, Mock

import pytest

from companion.models.schemas import ConversationTopic
from companion.services.gateway_service import ModelGateway
from companion.services.storage_service import LocalStorageService

TODAY = date(2024, 3, 10)


def make_completion(content: str | None) -> Mock:
    """chat.completions.createのモックレスポンスを作成"""
    response = Mock()
    response.choices = [Mock()]
    response.choices[0].message.content = content
    return response


def tutor_json(
    response: str = "Bonjour !",
    vocabulary: List[Dict[str, str]] | None = None,
    feedback: Dict[str, Any] | None = None,
    suggestion: Dict[str, str] | None = None,
) -> str:
    """チューター応答のJSONテキストを作成"""
    data: Dict[str, Any] = {"response": response, "vocabulary": vocabulary or []}
    if feedback is not None:
        data["pronunciation_feedback"] = feedback
    if suggestion is not None:
        data["micro_lesson_suggestion"] = suggestion
    return json.dumps(data, ensure_ascii=False)


def word(headword: str, translation: str = "translation") -> Dict[str, str]:
    return {"headword": headword, "translation": translation, "example_sentence": f"Exemple avec {headword}."}


@pytest.fixture
def mock_client():
    """モックOpenAIクライアント"""
    client = Mock()
    client.chat.completions.create = AsyncMock()
    return client


@pytest.fixture
def mock_sleep():
    return AsyncMock()


@pytest.fixture
def gateway(mock_client, mock_sleep):
    """モッククライアントを使うModelGatewayを作成"""
    return ModelGateway(client=mock_client, model="test-model", sleep=mock_sleep)


@pytest.fixture
def topic():
    return ConversationTopic(
        title="Au café",
        system_instruction="You are a waiter.",
        opening_prompt="Greet me.",
        completion_key="scenario-cafe",
    )


@pytest.fixture
def grammar_topic():
    return ConversationTopic(
        title="Present Tense (Le Présent)",
        system_instruction="You are a grammar coach.",
        opening_prompt="Start the grammar lesson on 'Le Présent'.",
        completion_key="grammar-present",
    )


@pytest.fixture
def storage(tmp_path):
    """一時ディレクトリを使うLocalStorageServiceを作成"""
    return LocalStorageService(data_dir=tmp_path)
