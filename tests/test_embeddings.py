from unittest.mock import patch

import embeddings
from embeddings import build_model_embedding_input, build_paper_embedding_input, refresh_paper_embedding


def test_paper_input_lists_fields_in_order() -> None:
    text = build_paper_embedding_input(
        {
            "title": "Tiny Experts",
            "abstract": "We compress.",
            "generatedSummary": None,
            "arxivCategories": ["cs.LG", "cs.AI"],
            "authors": ["Ada Lovelace"],
            "arxivId": "2501.01234",
        }
    )

    assert text.startswith("Title: Tiny Experts\n\nAbstract: We compress.\n\nSummary: \n\n")
    assert "Categories: cs.LG, cs.AI" in text
    assert text.endswith("ArXiv ID: 2501.01234")


def test_paper_input_is_truncated() -> None:
    text = build_paper_embedding_input({"title": "x", "abstract": "a" * 20000})
    assert len(text) == embeddings.PAPER_INPUT_LIMIT


def test_model_input_caps_each_field() -> None:
    text = build_model_embedding_input(
        {"creator": "c" * 500, "modelName": "llama", "description": None, "tags": ["text", "chat"]}
    )
    creator, model_name, tags = text.split(" ", 2)
    assert creator == "c" * 100
    assert model_name == "llama"
    assert tags == "text, chat"


def test_refresh_paper_embedding_failure_returns_false() -> None:
    with patch("embeddings.store.select", return_value=[]):
        assert refresh_paper_embedding(5) is False


def test_refresh_paper_embedding_stores_vector() -> None:
    with patch("embeddings.store.select", return_value=[{"id": 5, "title": "t"}]), \
         patch("embeddings.create_embedding", return_value=[0.5]), \
         patch("embeddings.store.update") as mock_update:
        assert refresh_paper_embedding(5) is True
    mock_update.assert_called_once_with("arxivPapersData", {"embedding": [0.5]}, {"id": "eq.5"})


def test_run_model_embeddings_stops_after_repeated_failures() -> None:
    rows = [{"id": i, "modelName": f"m{i}"} for i in range(10)]
    with patch("embeddings.store.select_all", return_value=rows), \
         patch("embeddings.get_client"), \
         patch("embeddings.create_embedding", side_effect=RuntimeError("rate limited")) as mock_embed, \
         patch("embeddings.time.sleep"):
        embeddings.run_model_embeddings()

    assert mock_embed.call_count == embeddings.MAX_CONSECUTIVE_FAILURES
