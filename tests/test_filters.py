from datetime import UTC, datetime

import pytest

from filters import is_relevant_paper
from models import FeedPaper


def _paper(categories: list[str], announce_type: str = "new") -> FeedPaper:
    return FeedPaper(
        arxiv_id="2501.00001",
        title="A Test Paper",
        abstract="An abstract.",
        authors=["Ada Lovelace"],
        categories=categories,
        paper_url="https://arxiv.org/abs/2501.00001",
        pdf_url="https://arxiv.org/pdf/2501.00001.pdf",
        published_at=datetime(2026, 2, 22, tzinfo=UTC),
        announce_type=announce_type,
    )


@pytest.mark.parametrize("categories", [["cs.LG"], ["math.OC", "cs.AI"], ["eess.IV"], ["stat.ML"]])
def test_tracked_category_is_relevant(categories: list[str]) -> None:
    assert is_relevant_paper(_paper(categories)) is True


@pytest.mark.parametrize("categories", [["math.OC"], ["cs.CR"], ["q-bio.NC"], []])
def test_untracked_categories_are_not_relevant(categories: list[str]) -> None:
    assert is_relevant_paper(_paper(categories)) is False


@pytest.mark.parametrize("announce_type", ["new", "replace", "replace-cross"])
def test_allowed_announce_types(announce_type: str) -> None:
    assert is_relevant_paper(_paper(["cs.CL"], announce_type)) is True


def test_cross_list_announcement_is_dropped() -> None:
    """'cross' entries were already announced under their primary category."""
    assert is_relevant_paper(_paper(["cs.CL"], "cross")) is False
