"""Tag summarized papers with task ids chosen by OpenAI."""

from __future__ import annotations

import logging
import time
from typing import Any

import store
from llm_client import chat_completion, get_client

LOGGER = logging.getLogger(__name__)

TASKS_TABLE = "tasks"
PAPER_PAUSE_SECONDS = 1.0
MAX_TOKENS = 150


def build_task_prompt(paper: dict[str, Any], task_names: list[str]) -> str:
    return (
        "You are an expert AI/ML research assistant that categorizes research papers into predefined tasks.\n\n"
        f"Title: {paper.get('title') or ''}\n"
        f"Abstract: {paper.get('abstract') or ''}\n\n"
        f"Summary: {paper.get('generatedSummary') or ''}\n\n"
        "Available Tasks:\n"
        + "\n".join(task_names)
        + "\n\nList every task from the list above that applies to this paper. "
        "Provide only the task names, each on a new line, formatted as:\n- Task Name 1\n- Task Name 2\n"
    )


def parse_task_names(reply: str) -> list[str]:
    names = []
    for line in reply.splitlines():
        name = line.strip()
        if name.startswith("-"):
            name = name[1:].strip()
        if name:
            names.append(name)
    return names


def map_task_ids(names: list[str], tasks: list[dict[str, Any]]) -> list[Any]:
    by_name = {task["task"].lower(): task["id"] for task in tasks if task.get("task")}
    return [by_name[name.lower()] for name in names if name.lower() in by_name]


def run_paper_tasks(limit: int | None = None) -> None:
    tasks = store.select(TASKS_TABLE, columns="id,task")
    if not tasks:
        LOGGER.error("No tasks available to assign")
        return
    task_names = [task["task"] for task in tasks]

    papers = store.select(
        store.PAPERS_TABLE,
        columns="id,title,abstract,generatedSummary",
        filters={"task_ids": "is.null", "generatedSummary": "not.is.null"},
        order="indexedDate.desc",
        limit=limit,
    )
    LOGGER.info("Found %s papers needing task assignment", len(papers))

    client = get_client()
    processed = 0
    skipped = 0
    failed = 0
    for paper in papers:
        try:
            reply = chat_completion(build_task_prompt(paper, task_names), max_tokens=MAX_TOKENS, client=client)
            task_ids = map_task_ids(parse_task_names(reply), tasks)
            if not task_ids:
                skipped += 1
                LOGGER.info("No known tasks matched for paper %s", paper["id"])
            else:
                store.update(store.PAPERS_TABLE, {"task_ids": task_ids}, {"id": f"eq.{paper['id']}"})
                processed += 1
        except Exception as exc:
            failed += 1
            LOGGER.exception("Task assignment failed for paper %s: %s", paper.get("id"), exc)
        time.sleep(PAPER_PAUSE_SECONDS)

    LOGGER.info("Task assignment complete. processed=%s skipped=%s failed=%s", processed, skipped, failed)
