from unittest.mock import MagicMock, patch

import pytest

import hf_models
import replicate_models
from hf_models import build_model_row, model_url, split_model_id

_TODAY = "2026-10-18"


def _page(payload, next_url: str | None = None) -> MagicMock:
    response = MagicMock()
    response.json.return_value = payload
    response.links = {"next": {"url": next_url}} if next_url else {}
    return response


# ---------------------------------------------------------------------------
# Hugging Face
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    ("model_id", "expected"),
    [("meta-llama/Llama-3-8B", ("meta-llama", "Llama-3-8B")), ("gpt2", ("huggingface", "gpt2"))],
)
def test_split_model_id(model_id: str, expected: tuple[str, str]) -> None:
    assert split_model_id(model_id) == expected


def test_model_url_omits_default_namespace() -> None:
    assert model_url("huggingface", "gpt2") == "https://huggingface.co/api/models/gpt2"
    assert model_url("org", "m") == "https://huggingface.co/api/models/org/m"


def test_build_model_row() -> None:
    row = build_model_row({"id": "org/m", "downloads": 12}, _TODAY)
    assert row["creator"] == "org"
    assert row["runs"] == 12
    assert row["platform"] == "huggingFace"
    assert row["indexedDate"] == _TODAY


def test_run_hf_models_follows_pages_and_skips_known() -> None:
    pages = [
        _page([{"id": "org/a"}, {"id": "org/b"}], next_url="https://huggingface.co/api/models?cursor=2"),
        _page([{"id": "org/c"}, {}]),
    ]
    with patch("hf_models.requests.get", side_effect=pages) as mock_get, \
         patch("hf_models.store.exists", side_effect=[False, True, False]), \
         patch("hf_models.store.insert") as mock_insert:
        hf_models.run_hf_models()

    assert mock_get.call_args_list[1].args[0] == "https://huggingface.co/api/models?cursor=2"
    assert [call.args[1]["modelName"] for call in mock_insert.call_args_list] == ["a", "c"]


def test_run_hf_models_limit_caps_insertions() -> None:
    pages = [_page([{"id": "org/a"}, {"id": "org/b"}], next_url="https://next")]
    with patch("hf_models.requests.get", side_effect=pages) as mock_get, \
         patch("hf_models.store.exists", return_value=False), \
         patch("hf_models.store.insert") as mock_insert:
        hf_models.run_hf_models(limit=1)

    assert mock_insert.call_count == 1
    assert mock_get.call_count == 1


# ---------------------------------------------------------------------------
# Replicate
# ---------------------------------------------------------------------------

_REPLICATE_MODEL = {
    "owner": "stability-ai",
    "name": "sdxl",
    "run_count": 1000,
    "url": "https://replicate.com/stability-ai/sdxl",
    "cover_image_url": "https://cover",
}


def test_upsert_model_updates_existing_row() -> None:
    with patch("replicate_models.store.select", return_value=[{"id": 4}]), \
         patch("replicate_models.store.update") as mock_update, \
         patch("replicate_models.store.insert") as mock_insert:
        assert replicate_models.upsert_model(_REPLICATE_MODEL, _TODAY) == "updated"

    assert mock_update.call_args.args[1]["runs"] == 1000
    assert mock_update.call_args.args[2] == {"id": "eq.4"}
    mock_insert.assert_not_called()


def test_upsert_model_inserts_new_row() -> None:
    with patch("replicate_models.store.select", return_value=[]), \
         patch("replicate_models.store.insert") as mock_insert:
        assert replicate_models.upsert_model(_REPLICATE_MODEL, _TODAY) == "inserted"

    row = mock_insert.call_args.args[1]
    assert row["creator"] == "stability-ai"
    assert row["platform"] == "replicate"
    assert row["example"] == "https://cover"


def test_run_replicate_models_requires_token() -> None:
    with patch.dict("os.environ", {}, clear=True):
        with pytest.raises(RuntimeError, match="REPLICATE_API_TOKEN"):
            replicate_models.run_replicate_models()


def test_run_replicate_models_follows_next_cursor() -> None:
    first = MagicMock()
    first.json.return_value = {"results": [_REPLICATE_MODEL], "next": "https://api.replicate.com/v1/models?cursor=x"}
    second = MagicMock()
    second.json.return_value = {"results": [{"owner": "a"}], "next": None}

    with patch.dict("os.environ", {"REPLICATE_API_TOKEN": "r8_token"}, clear=True), \
         patch("replicate_models.requests.get", side_effect=[first, second]) as mock_get, \
         patch("replicate_models.upsert_model", side_effect=["inserted", KeyError("name")]) as mock_upsert:
        replicate_models.run_replicate_models()

    assert mock_get.call_args_list[0].kwargs["headers"] == {"Authorization": "Token r8_token"}
    assert mock_upsert.call_count == 2
