"""Unit tests for chat configuration."""

from unittest.mock import patch

import pytest

from creator_chat.chat.config import (
    Confidence,
    QuestionType,
    RagConfig,
    get_model,
    get_rag_config,
)


@pytest.mark.unit
class TestRagConfig:
    """Test retrieval parameters and model selection."""

    def test_confidence_order(self) -> None:
        ranks = [c.rank for c in (Confidence.NOT_COVERED, Confidence.LOW, Confidence.MEDIUM, Confidence.HIGH)]
        assert ranks == [0, 1, 2, 3]

    def test_moment_requires_timestamps(self) -> None:
        params = RagConfig().retrieval_params(QuestionType.MOMENT)
        assert params.requires_timestamp is True
        assert params.match_count == 5

    def test_public_mode_caps_chunks(self) -> None:
        config = RagConfig(public_max_chunks=6)

        params = config.retrieval_params(QuestionType.GENERAL, public_mode=True)

        assert params.match_count == 6
        assert config.retrieval_params(QuestionType.GENERAL).match_count == 10

    def test_public_mode_never_lowers_thresholds(self) -> None:
        config = RagConfig()

        for question_type in QuestionType:
            base = config.retrieval_params(question_type)
            public = config.retrieval_params(question_type, public_mode=True)
            assert public.min_threshold >= base.min_threshold
            assert public.preferred_threshold >= base.preferred_threshold
            assert public.match_count <= base.match_count

    def test_public_threshold_raises_moment_minimum(self) -> None:
        params = RagConfig().retrieval_params(QuestionType.MOMENT, public_mode=True)
        assert params.min_threshold == 0.40

    def test_environment_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RAG_MIN_SIMILARITY_CONFIDENT", "0.5")
        monkeypatch.setenv("PUBLIC_MAX_DAILY_MESSAGES", "3")

        config = get_rag_config()

        assert config.min_similarity_for_confident_answer == 0.5
        assert config.public_max_daily_messages == 3

    def test_get_model_uses_config(self) -> None:
        config = RagConfig(
            llm_choice="llama3.1", llm_base_url="http://localhost:11434/v1", llm_api_key="ollama"
        )

        with patch("creator_chat.chat.config.OpenAIProvider") as mock_provider, patch(
            "creator_chat.chat.config.OpenAIChatModel"
        ) as mock_model:
            get_model(config)

        mock_provider.assert_called_once_with(
            base_url="http://localhost:11434/v1", api_key="ollama"
        )
        mock_model.assert_called_once_with("llama3.1", provider=mock_provider.return_value)
