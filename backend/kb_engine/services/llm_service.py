"""Answer synthesis through an OpenAI-compatible chat completion API."""
import time
from typing import Any, Dict, List, Optional

import httpx
from openai import AsyncOpenAI

from kb_engine.exceptions import ServiceUnavailableError
from kb_engine.models.retrieval import RetrievedChunk
from kb_engine.prompts import AnswerPrompt
from kb_engine.utils.logger import logger


class LLMService:
    """Service for generating grounded answers from retrieved passages."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o-mini",
        timeout_seconds: float = 60.0,
        client: Optional[AsyncOpenAI] = None,
    ):
        """
        Initialize LLM service.

        Without an API key (and no client) answers fall back to the numbered
        source passages themselves.

        Args:
            api_key: API key for the chat model
            base_url: OpenAI-compatible base URL
            model: Default chat model
            timeout_seconds: Request timeout
            client: Optional pre-built AsyncOpenAI client
        """
        self.model = model
        self.client = client
        if self.client is None and api_key:
            self.client = AsyncOpenAI(
                api_key=api_key,
                base_url=base_url,
                http_client=httpx.AsyncClient(timeout=timeout_seconds, trust_env=False),
            )
        if self.client is None:
            logger.warning("No LLM API key configured; answers will quote sources directly")

    async def generate_answer(
        self,
        question: str,
        chunks: List[RetrievedChunk],
        model: Optional[str] = None,
        temperature: float = 0.2,
        char_budget: int = 16000,
    ) -> Dict[str, Any]:
        """
        Generate an answer from context passages.

        Args:
            question: User's question
            chunks: Passages that passed confidence gating
            model: Chat model override (tenant setting)
            temperature: Sampling temperature
            char_budget: Context size limit in characters

        Returns:
            Dictionary with answer, token_usage, and response_time_ms

        Raises:
            ServiceUnavailableError: If the chat API call fails
        """
        start_time = time.time()

        if self.client is None:
            joined = "\n\n".join(f"({i}) {chunk.content}" for i, chunk in enumerate(chunks, 1))
            return {
                "answer": f"Based on the following sources, here is an answer:\n\n{joined}",
                "token_usage": None,
                "response_time_ms": (time.time() - start_time) * 1000,
            }

        try:
            response = await self.client.chat.completions.create(
                model=model or self.model,
                temperature=temperature,
                messages=[
                    {"role": "system", "content": AnswerPrompt.SYSTEM_MESSAGE},
                    {"role": "user", "content": AnswerPrompt.build(question, chunks, char_budget)},
                ],
            )
        except Exception as e:
            logger.error(f"Error calling chat completion API: {str(e)}", exc_info=True)
            raise ServiceUnavailableError("Answer generation is temporarily unavailable") from e

        answer = response.choices[0].message.content or ""
        token_usage = None
        if response.usage is not None:
            token_usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            }
        response_time_ms = (time.time() - start_time) * 1000

        logger.info(
            "LLM response generated",
            extra={"token_usage": token_usage, "llm_response_time": round(response_time_ms, 1)},
        )
        return {"answer": answer, "token_usage": token_usage, "response_time_ms": response_time_ms}

    async def close(self) -> None:
        """Close HTTP client."""
        if self.client is not None:
            await self.client.close()
