"""LDA topics over the last two weeks of papers, named by Claude."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

import numpy as np
from sklearn.decomposition import LatentDirichletAllocation
from sklearn.feature_extraction.text import CountVectorizer

import store
from anthropic_client import claude_complete

LOGGER = logging.getLogger(__name__)

TOPIC_RESULTS_TABLE = "topic_modeling_results"
LOOKBACK_DAYS = 14
NUM_TOPICS = 20
NUM_TERMS = 10
RANDOM_STATE = 42


@dataclass(frozen=True, slots=True)
class TopicTerm:
    term: str
    probability: float


def paper_document(paper: dict[str, Any]) -> str:
    return f"{paper.get('title') or ''} {paper.get('abstract') or ''} {paper.get('generatedSummary') or ''}"


def perform_lda(documents: list[str], num_topics: int = NUM_TOPICS, num_terms: int = NUM_TERMS) -> list[list[TopicTerm]]:
    """Fit LDA and return each topic's top terms with their normalized probabilities."""
    vectorizer = CountVectorizer(stop_words="english", lowercase=True)
    counts = vectorizer.fit_transform(documents)
    lda = LatentDirichletAllocation(n_components=num_topics, random_state=RANDOM_STATE)
    lda.fit(counts)

    vocabulary = vectorizer.get_feature_names_out()
    topics: list[list[TopicTerm]] = []
    for weights in lda.components_:
        distribution = weights / weights.sum()
        top = np.argsort(distribution)[::-1][:num_terms]
        topics.append([TopicTerm(term=str(vocabulary[i]), probability=float(distribution[i])) for i in top])
    return topics


def name_topics(topics: list[list[TopicTerm]]) -> list[str]:
    """Ask Claude for a short name per topic; falls back to "Topic N" for any gap."""
    fallback = [f"Topic {index}" for index in range(1, len(topics) + 1)]
    listing = "\n".join(
        f"Topic {index}: " + ", ".join(f"{t.term} ({t.probability * 100:.2f}%)" for t in topic)
        for index, topic in enumerate(topics, start=1)
    )
    prompt = (
        "As an expert in scientific research and topic modeling, provide a precise, informative name "
        "of at most 5 words for each topic below, based on its keywords. Avoid generic names.\n\n"
        f"{listing}\n\n"
        "Respond with a numbered list of topic names only:\n1. [Topic 1 Name]\n2. [Topic 2 Name]\n..."
    )
    try:
        reply = claude_complete(prompt, max_tokens=1000)
    except Exception as exc:
        LOGGER.error("Topic naming failed: %s", exc)
        return fallback

    names = [re.sub(r"^\d+\.\s*", "", line).strip() for line in reply.splitlines() if re.match(r"^\d+\.", line)]
    return [names[i] if i < len(names) and names[i] else fallback[i] for i in range(len(topics))]


def topic_strength(document: str, topic: list[TopicTerm]) -> float:
    lowered = document.lower()
    return sum(lowered.count(term.term) * term.probability for term in topic)


def assign_papers(papers: list[dict[str, Any]], topics: list[list[TopicTerm]]) -> list[list[int]]:
    """Per topic, the ids of papers mentioning its terms, strongest first."""
    documents = [(paper["id"], paper_document(paper)) for paper in papers]
    assignments = []
    for topic in topics:
        scored = [(topic_strength(text, topic), paper_id) for paper_id, text in documents]
        ranked = sorted((item for item in scored if item[0] > 0), key=lambda item: item[0], reverse=True)
        assignments.append([paper_id for _, paper_id in ranked])
    return assignments


def run_topic_modeling(limit: int | None = None) -> None:
    papers = store.select_all(
        store.PAPERS_TABLE,
        columns="id,title,abstract,generatedSummary",
        filters={
            "publishedDate": f"gte.{store.iso_ago(days=LOOKBACK_DAYS)}",
            "totalScore": "gt.0",
        },
        order="id.asc",
    )
    if limit is not None:
        papers = papers[:limit]
    if not papers:
        LOGGER.info("No recent papers for topic modeling")
        return

    LOGGER.info("Running LDA over %s papers", len(papers))
    topics = perform_lda([paper_document(paper) for paper in papers])
    names = name_topics(topics)
    assignments = assign_papers(papers, topics)

    rows = [
        {
            "topic_name": name,
            "keywords": [t.term for t in topic],
            "keyword_probabilities": [t.probability for t in topic],
            "paper_ids": paper_ids,
        }
        for name, topic, paper_ids in zip(names, topics, assignments)
    ]
    store.insert(TOPIC_RESULTS_TABLE, rows)
    for row in rows:
        LOGGER.info("Topic %r: %s papers", row["topic_name"], len(row["paper_ids"]))
