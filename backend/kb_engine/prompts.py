"""Centralized prompt templates for reranking and answer synthesis."""
from typing import List

from kb_engine.models.retrieval import RetrievedChunk


CONTEXT_CHAR_LIMIT = 2000


class RerankPrompt:
    """Prompt for scoring passage relevance."""

    SYSTEM_MESSAGE = (
        "You are a ranking model. Score each passage for relevance to the query from 0 to 1 "
        "with 0.01 precision. Respond with a JSON object of the form {\"scores\": [...]} "
        "containing one number per passage, in the order given."
    )


class AnswerPrompt:
    """Prompt template for answering from retrieved passages."""

    SYSTEM_MESSAGE = (
        "You are a helpful assistant. Answer concisely using only the provided context. "
        "Cite sources as [1], [2], ... where relevant. If unsure, say you don't know."
    )

    @staticmethod
    def build(question: str, chunks: List[RetrievedChunk], char_budget: int = 16000) -> str:
        """
        Build the user message with numbered context blocks.

        Args:
            question: User's question
            chunks: Passages that passed confidence gating
            char_budget: Total characters of context allowed

        Returns:
            Formatted prompt string
        """
        blocks = []
        used = 0
        for i, chunk in enumerate(chunks, 1):
            heading = f"{chunk.title} - " if chunk.title else ""
            block = f"[{i}] {heading}{chunk.content[:CONTEXT_CHAR_LIMIT]}"
            if blocks and used + len(block) > char_budget:
                break
            blocks.append(block)
            used += len(block)

        context = "\n\n".join(blocks)
        return f"Question: {question}\n\nContext:\n{context}"
