"""Transcript summarization clients."""

from note_processor.summarize.client import (
    BackendSummarizationClient,
    ChatSummarizationClient,
    SummarizationEngine,
    SummaryResult,
    get_summarization_engine,
    parse_summary_content,
)

__all__ = [
    "BackendSummarizationClient",
    "ChatSummarizationClient",
    "SummarizationEngine",
    "SummaryResult",
    "get_summarization_engine",
    "parse_summary_content",
]
