"""OpenAI Responses API client for edit planning."""

from dataclasses import dataclass

import openai
from openai import AsyncOpenAI

from photo_agent.services.llm_planner import LlmClient, PlannerTransportError

_RETRYABLE_STATUS = {500, 502, 503, 504}


@dataclass
class OpenAIPlannerClient(LlmClient):
    """Planner client backed by OpenAI Responses API."""

    client: AsyncOpenAI

    @classmethod
    def create(cls, api_key: str) -> "OpenAIPlannerClient":
        """Create an OpenAI planner client.

        Retries are driven by the planner, so the SDK's own retries are off.
        """
        return cls(client=AsyncOpenAI(api_key=api_key, max_retries=0))

    async def complete(  # noqa: PLR0913
        self,
        *,
        model: str,
        reasoning_effort: str | None,
        store: bool,
        system_prompt: str,
        user_prompt: str,
        image_data_url: str | None,
    ) -> str:
        """Call OpenAI Responses API in JSON mode and return the output text."""
        content: list[dict[str, object]] = [{"type": "input_text", "text": user_prompt}]
        if image_data_url:
            content.append({"type": "input_image", "image_url": image_data_url})
        request_payload: dict[str, object] = {
            "model": model,
            "instructions": system_prompt,
            "input": [{"role": "user", "content": content}],
            "text": {"format": {"type": "json_object"}},
            "store": store,
        }
        if reasoning_effort:
            request_payload["reasoning"] = {"effort": reasoning_effort}

        try:
            response = await self.client.responses.create(**request_payload)
        except openai.APITimeoutError as exc:
            raise PlannerTransportError(
                "timeout", retryable=True, detail=str(exc)
            ) from exc
        except openai.APIConnectionError as exc:
            raise PlannerTransportError(
                "network_error", retryable=True, detail=str(exc)
            ) from exc
        except openai.RateLimitError as exc:
            raise PlannerTransportError(
                "rate_limit", retryable=True, detail=str(exc)
            ) from exc
        except openai.APIStatusError as exc:
            raise PlannerTransportError(
                "api_error",
                retryable=exc.status_code in _RETRYABLE_STATUS,
                detail=str(exc),
            ) from exc
        except openai.APIError as exc:
            raise PlannerTransportError(
                "api_error", retryable=False, detail=str(exc)
            ) from exc

        output_text = response.output_text
        if not output_text:
            raise PlannerTransportError(
                "api_error", retryable=False, detail="OpenAI returned an empty response"
            )
        return output_text

    async def close(self) -> None:
        """Close the underlying HTTP session."""
        await self.client.close()
