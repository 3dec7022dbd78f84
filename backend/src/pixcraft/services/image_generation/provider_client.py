"""Replicate API client for image generation with rate-limit retry."""

import asyncio
import random
from typing import Any, Awaitable, Callable, Optional

import replicate
import structlog

from pixcraft.models.generation import DEFAULT_MODEL, GenerationParameters
from pixcraft.services.exceptions import ProviderOverloaded, ProviderUnavailable

logger = structlog.get_logger(__name__)

OVERLOADED_MESSAGE = (
    "AI generation service is temporarily overloaded. Please try again in a few minutes."
)
UNAVAILABLE_PREFIX = "AI generation service unavailable: "

Runner = Callable[[str, dict[str, Any]], Awaitable[Any]]


def is_rate_limit_error(exception: BaseException) -> bool:
    """Classify an exception as a rate-limit/overload condition.

    Classification rules:
        - HTTP status 429 on the exception (Replicate SDK sets ``status``)
        - "429", "too many requests" or "rate limit" in the message
    """
    for attr in ("status", "status_code"):
        if getattr(exception, attr, None) == 429:
            return True

    error_message = str(exception)
    error_message_lower = error_message.lower()
    return (
        "429" in error_message
        or "too many requests" in error_message_lower
        or "rate limit" in error_message_lower
    )


def extract_image_urls(output: Any) -> list[str]:
    """Extract remote image URLs from a provider output.

    Output format varies by model: a URL string, a file object exposing
    ``url``, a list of either, or a dict carrying ``images``, ``image_url``
    or ``url``.
    """
    if output is None:
        return []

    if isinstance(output, str):
        return [output] if output.strip() else []

    if isinstance(output, dict):
        if isinstance(output.get("images"), list):
            return extract_image_urls(output["images"])
        for key in ("image_url", "url"):
            if output.get(key):
                return extract_image_urls(output[key])
        return []

    if isinstance(output, (list, tuple)):
        urls: list[str] = []
        for item in output:
            urls.extend(extract_image_urls(item))
        return urls

    url = getattr(output, "url", None)
    if url:
        return [str(url)]

    return []


def build_input(
    prompt: str, input_image_url: Optional[str], parameters: GenerationParameters
) -> dict[str, Any]:
    """Map canonical parameters onto the provider's input payload."""
    payload: dict[str, Any] = {
        "prompt": prompt,
        "num_outputs": parameters.image_count,
        "guidance": parameters.guidance_scale,
        "num_inference_steps": parameters.num_inference_steps,
        "width": parameters.width,
        "height": parameters.height,
        "output_format": "jpg",
    }
    if parameters.negative_prompt:
        payload["negative_prompt"] = parameters.negative_prompt
    if parameters.seed is not None:
        payload["seed"] = parameters.seed
    if input_image_url:
        payload["input_image"] = input_image_url
    return payload


class ProviderClient:
    """Generation provider adapter.

    Stateless between calls and safe to share across concurrently processed
    generations. Only rate-limit failures are retried; everything else fails
    on the first attempt.
    """

    def __init__(
        self,
        api_token: str,
        model_version: str = DEFAULT_MODEL,
        max_retries: int = 3,
        timeout_seconds: float = 300.0,
        *,
        runner: Optional[Runner] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Callable[[float, float], float] = random.uniform,
    ):
        """Initialize provider client.

        Args:
            api_token: Replicate API token
            model_version: Model identifier passed to Replicate
            max_retries: Additional attempts allowed after a rate-limit failure
            timeout_seconds: Deadline for a single provider call
            runner: Coroutine ``(model, input) -> output`` replacing the Replicate SDK call
            sleep: Awaitable used for backoff waits
            jitter: ``(low, high) -> float`` source of backoff jitter
        """
        self.api_token = api_token
        self.model_version = model_version or DEFAULT_MODEL
        self.max_retries = max_retries
        self.timeout_seconds = timeout_seconds
        self._runner = runner or self._run_replicate
        self._sleep = sleep
        self._jitter = jitter
        self._client: Optional[replicate.Client] = None

    async def _run_replicate(self, model: str, payload: dict[str, Any]) -> Any:
        if not self.api_token:
            raise ProviderUnavailable(UNAVAILABLE_PREFIX + "REPLICATE_API_TOKEN not configured")
        if self._client is None:
            self._client = replicate.Client(api_token=self.api_token)
        # SDK call is synchronous, run in thread pool
        return await asyncio.to_thread(self._client.run, model, input=payload)

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait before retrying 0-indexed ``attempt``: 2**attempt + U(0, 1)."""
        return float(2**attempt) + self._jitter(0.0, 1.0)

    async def generate(
        self,
        prompt: str,
        input_image_url: Optional[str],
        parameters: GenerationParameters,
    ) -> list[str]:
        """Generate images and return their remote URLs.

        Args:
            prompt: Validated text prompt
            input_image_url: Optional source image for image-to-image generation
            parameters: Canonical generation parameters

        Returns:
            Remote image URLs in provider order (may be empty)

        Raises:
            ProviderOverloaded: Rate limited on every attempt
            ProviderUnavailable: Any other provider error, or no answer in time
        """
        payload = build_input(prompt, input_image_url, parameters)
        attempt = 0

        while True:
            logger.info(
                "provider.call",
                model=self.model_version,
                attempt=attempt + 1,
                max_attempts=self.max_retries + 1,
                num_images=parameters.image_count,
                has_input_image=input_image_url is not None,
            )
            try:
                output = await asyncio.wait_for(
                    self._runner(self.model_version, payload), timeout=self.timeout_seconds
                )
            except asyncio.TimeoutError as e:
                logger.error(
                    "provider.timeout", attempt=attempt + 1, timeout_seconds=self.timeout_seconds
                )
                raise ProviderUnavailable(
                    UNAVAILABLE_PREFIX + f"no response within {self.timeout_seconds:g}s"
                ) from e
            except ProviderUnavailable:
                raise
            except Exception as e:
                rate_limited = is_rate_limit_error(e)
                will_retry = rate_limited and attempt < self.max_retries
                logger.error(
                    "provider.error",
                    attempt=attempt + 1,
                    error_type=type(e).__name__,
                    error_message=str(e),
                    rate_limited=rate_limited,
                    will_retry=will_retry,
                )

                if will_retry:
                    delay = self.backoff_delay(attempt)
                    logger.info("provider.rate_limited", retry_in_seconds=round(delay, 3))
                    await self._sleep(delay)
                    attempt += 1
                    continue

                if rate_limited:
                    raise ProviderOverloaded(OVERLOADED_MESSAGE) from e
                raise ProviderUnavailable(UNAVAILABLE_PREFIX + (str(e) or "Unknown error")) from e

            urls = extract_image_urls(output)
            logger.info("provider.result", attempt=attempt + 1, image_count=len(urls))
            return urls
