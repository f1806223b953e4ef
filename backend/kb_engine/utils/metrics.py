"""Prometheus metrics for ingestion and retrieval."""
from prometheus_client import Counter, Histogram


RETRIEVAL_LATENCY = Histogram(
    "kb_retrieval_seconds",
    "End-to-end retrieval latency for cache misses",
    ["strategy"],
)
RETRIEVAL_CACHE = Counter(
    "kb_retrieval_cache_total",
    "Retrieval cache lookups",
    ["result"],
)
RERANK_OUTCOMES = Counter(
    "kb_rerank_total",
    "Rerank decisions",
    ["outcome"],
)
INGESTIONS = Counter(
    "kb_ingestions_total",
    "Document ingestion attempts by final status",
    ["status"],
)
INGESTED_PASSAGES = Counter(
    "kb_ingested_passages_total",
    "Passages written by ingestion",
)
