"""
Azure OpenAI text-generation client.

Wraps the ``openai`` SDK's :class:`~openai.AzureOpenAI` client behind a
single ``complete(system, user)`` call so the recommendation generator and
cost predictor never touch the SDK directly.
"""

from __future__ import annotations

import logging
from typing import Protocol

import openai
from openai import AzureOpenAI

from pkg.config import Settings, get_settings
from pkg.errors import ConfigurationError, UpstreamServiceError

logger = logging.getLogger(__name__)

SERVICE_NAME = "Azure OpenAI"


class TextGenerator(Protocol):
    """Anything that turns a system/user message pair into text."""

    def complete(
        self,
        system: str,
        user: str,
        *,
        deployment: str | None = None,
    ) -> str: ...


class TextGenerationClient:
    """Chat-completion client for an Azure OpenAI resource."""

    def __init__(self, settings: Settings | None = None, client: AzureOpenAI | None = None):
        self._settings = settings or get_settings()
        self._client = client

    @property
    def deployment(self) -> str:
        return self._settings.azure_openai_deployment

    # ------------------------------------------------------------------
    # Lazy initialization
    # ------------------------------------------------------------------

    def _ensure_client(self) -> AzureOpenAI:
        """Build the SDK client, failing fast when configuration is missing."""
        if self._client is not None:
            return self._client

        if not self._settings.azure_openai_endpoint:
            raise ConfigurationError("AZURE_OPENAI_ENDPOINT is not configured")
        api_key = self._settings.azure_openai_api_key.get_secret_value()
        if not api_key:
            raise ConfigurationError("AZURE_OPENAI_API_KEY is not configured")

        self._client = AzureOpenAI(
            azure_endpoint=self._settings.azure_openai_endpoint,
            api_key=api_key,
            api_version=self._settings.azure_openai_api_version,
        )
        return self._client

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def complete(
        self,
        system: str,
        user: str,
        *,
        deployment: str | None = None,
    ) -> str:
        """Return the text of a single chat completion.

        Raises
        ------
        ConfigurationError
            If the endpoint or key is not configured.  Raised before any
            network call.
        UpstreamServiceError
            If the service rejects the request or returns no content.
        """
        client = self._ensure_client()
        model = deployment or self.deployment

        try:
            response = client.chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                temperature=self._settings.llm_temperature,
                max_tokens=self._settings.llm_max_tokens,
            )
        except openai.APIStatusError as exc:
            logger.error("%s returned HTTP %s: %s", SERVICE_NAME, exc.status_code, exc)
            status = 400 if 400 <= exc.status_code < 500 and exc.status_code != 429 else 500
            raise UpstreamServiceError(
                SERVICE_NAME, f"{exc.status_code} {exc.message}", status
            ) from exc
        except openai.OpenAIError as exc:
            logger.error("%s request failed: %s", SERVICE_NAME, exc)
            raise UpstreamServiceError(SERVICE_NAME, str(exc)) from exc

        if not response.choices or response.choices[0].message.content is None:
            raise UpstreamServiceError(SERVICE_NAME, "empty completion")

        text = response.choices[0].message.content.strip()
        logger.info(
            "%s completion from %s: %d characters", SERVICE_NAME, model, len(text)
        )
        return text
