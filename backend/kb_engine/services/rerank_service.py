"""LLM-based relevance scoring for a shortlist of passages."""
import json
import time
from typing import List, Optional

import httpx
from openai import AsyncOpenAI

from kb_engine.exceptions import RerankError
from kb_engine.prompts import RerankPrompt
from kb_engine.utils.logger import logger


PASSAGE_CHAR_LIMIT = 1200


class RerankService:
    """Scores passages 0..1 against a query with one chat completion."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o-mini",
        timeout_seconds: float = 8.0,
        client: Optional[AsyncOpenAI] = None,
    ):
        """
        Initialize rerank service.

        Args:
            api_key: API key for the scoring model
            base_url: OpenAI-compatible base URL
            model: Chat model used for scoring
            timeout_seconds: Request timeout
            client: Optional pre-built AsyncOpenAI client
        """
        self.model = model
        self.client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            http_client=httpx.AsyncClient(timeout=timeout_seconds, trust_env=False),
            max_retries=0,
        )

    async def score(self, query: str, passages: List[str]) -> List[float]:
        """
        Score each passage for relevance to the query.

        Args:
            query: User query
            passages: Passage texts in candidate order

        Returns:
            One score in [0, 1] per passage, same order

        Raises:
            RerankError: On API failure or a malformed/mismatched score list
        """
        if not passages:
            return []

        start_time = time.time()
        payload = {
            "query": query,
            "passages": [{"id": i, "text": text[:PASSAGE_CHAR_LIMIT]} for i, text in enumerate(passages)],
        }
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                temperature=0,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": RerankPrompt.SYSTEM_MESSAGE},
                    {"role": "user", "content": json.dumps(payload)},
                ],
            )
            content = response.choices[0].message.content or "{}"
        except Exception as e:
            raise RerankError(f"Rerank request failed: {str(e)[:200]}") from e

        scores = parse_scores(content, expected=len(passages))
        logger.debug(f"Reranked {len(passages)} passages in {time.time() - start_time:.2f}s")
        return scores

    async def close(self) -> None:
        await self.client.close()


def parse_scores(content: str, expected: int) -> List[float]:
    """Parse ``[..]`` or ``{"scores": [..]}`` into clamped floats of the expected length."""
    try:
        parsed = json.loads(content)
    except ValueError as e:
        raise RerankError("Rerank response is not JSON") from e

    scores = parsed.get("scores") if isinstance(parsed, dict) else parsed
    if not isinstance(scores, list) or len(scores) != expected:
        raise RerankError(f"Rerank returned {len(scores) if isinstance(scores, list) else 'no'} scores for {expected} passages")
    try:
        return [min(1.0, max(0.0, float(s))) for s in scores]
    except (TypeError, ValueError) as e:
        raise RerankError("Rerank scores are not numeric") from e
