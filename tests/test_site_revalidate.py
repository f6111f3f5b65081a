from unittest.mock import MagicMock, patch

import pytest
import requests

import site_revalidate

_ENV = {"SITE_URL": "https://aimodels.fyi/", "REVALIDATE_SECRET": "s3cret"}


def test_revalidate_path_calls_site_endpoint() -> None:
    with patch("site_revalidate.requests.get", return_value=MagicMock()) as mock_get:
        assert site_revalidate.revalidate_path("https://aimodels.fyi/", "s3cret", "/papers/arxiv/x") is True

    assert mock_get.call_args.args[0] == "https://aimodels.fyi/api/revalidate"
    assert mock_get.call_args.kwargs["params"] == {"secret": "s3cret", "path": "/papers/arxiv/x"}


def test_revalidate_path_failure_returns_false() -> None:
    with patch("site_revalidate.requests.get", side_effect=requests.Timeout("slow")):
        assert site_revalidate.revalidate_path("https://aimodels.fyi", "s", "/p") is False


def test_run_site_revalidate_builds_paper_paths() -> None:
    rows = [{"slug": "tiny-experts", "platform": None}, {"slug": None}]
    with patch.dict("os.environ", _ENV, clear=True), \
         patch("site_revalidate.store.select", return_value=rows), \
         patch("site_revalidate.revalidate_path", return_value=True) as mock_revalidate:
        site_revalidate.run_site_revalidate()

    mock_revalidate.assert_called_once_with("https://aimodels.fyi/", "s3cret", "/papers/arxiv/tiny-experts")


def test_run_site_revalidate_requires_secret() -> None:
    with patch.dict("os.environ", {"SITE_URL": "https://aimodels.fyi"}, clear=True):
        with pytest.raises(RuntimeError, match="REVALIDATE_SECRET"):
            site_revalidate.run_site_revalidate()
