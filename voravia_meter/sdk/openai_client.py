"""
Metered OpenAI vision client.

Records a usage event for every successful vision call without changing
the response.
"""

from typing import Any, Dict, Optional

from openai import OpenAI

from ..config.loader import MeterConfig
from ..core.emitter import emit_usage_event
from ..core.pricing import DEFAULT_RATE_CARD, RateCard, compute_cost
from ..core.token_counter import TokenUsage
from ..storage.db import DEFAULT_DB_PATH
from ..storage.models import UsageContext, UsageEvent

PROVIDER = "openai"


class MeteredOpenAI:
    """OpenAI client wrapper that meters vision calls.

    A call is charged only after OpenAI answered; if the request raises,
    the error propagates and no event is written. Database failures while
    recording are loud too, so no usage is lost silently.
    """

    def __init__(
        self,
        context: UsageContext,
        model: str = "gpt-4.1-mini",
        db_path: Optional[str] = None,
        rate_card: Optional[RateCard] = None,
        client: Optional[OpenAI] = None,
    ):
        """Initialize metered OpenAI client.

        Args:
            context: Request identity the events are attributed to
            model: OpenAI model name
            db_path: Database file path (defaults to DEFAULT_DB_PATH)
            rate_card: Pricing table (defaults to DEFAULT_RATE_CARD)
            client: Preconfigured OpenAI client

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.context = context
        self.model = model
        self.db_path = db_path or DEFAULT_DB_PATH
        self.rate_card = rate_card or DEFAULT_RATE_CARD
        self.client = client or OpenAI()
        self.last_event: Optional[UsageEvent] = None

    @classmethod
    def from_config(
        cls,
        context: UsageContext,
        config: MeterConfig,
        model: str = "gpt-4.1-mini",
        client: Optional[OpenAI] = None,
    ) -> "MeteredOpenAI":
        """Build a client on the configured database and rate card."""
        return cls(
            context,
            model=model,
            db_path=config.database.path,
            rate_card=config.pricing,
            client=client,
        )

    def scan_image(
        self,
        image_data_url: str,
        prompt: str,
        service: str = "openai_scan_vision",
        subject_user_id: Optional[str] = None,
        system_prompt: Optional[str] = None,
        **kwargs: Any
    ) -> Any:
        """Send one image plus instructions to the Responses API and meter it.

        Args:
            image_data_url: data: URL (or https URL) of the meal or menu image
            prompt: User instructions sent with the image
            service: Billable service name recorded on the event
            subject_user_id: Family member the scan was for
            system_prompt: Optional system instructions
            **kwargs: Additional Responses API parameters

        Returns:
            OpenAI response, unchanged

        Raises:
            ValueError: If the image is missing or the response has no usage
            OpenAI API errors: Propagated without modification
            Database errors: Propagated without modification
        """
        if not image_data_url:
            raise ValueError("image_data_url is required and cannot be empty")

        messages = []
        if system_prompt:
            messages.append({
                "role": "system",
                "content": [{"type": "input_text", "text": system_prompt}],
            })
        messages.append({
            "role": "user",
            "content": [
                {"type": "input_text", "text": prompt},
                {"type": "input_image", "image_url": image_data_url},
            ],
        })

        # Any failure here stops execution before anything is charged
        response = self.client.responses.create(model=self.model, input=messages, **kwargs)

        usage = getattr(response, "usage", None)
        if not usage:
            raise ValueError("OpenAI response missing usage information")

        tokens = TokenUsage.from_response_usage(usage)
        cost = compute_cost(PROVIDER, service, tokens, rate_card=self.rate_card)

        metadata: Dict[str, Any] = {
            "model": self.model,
            "inputTokens": tokens.input_tokens,
            "outputTokens": tokens.output_tokens,
            "totalTokens": tokens.total_tokens,
            "rateVersion": cost.rate_version,
            "priced": cost.priced,
            "responseId": getattr(response, "id", None),
        }

        self.last_event = emit_usage_event(
            self.context,
            provider=PROVIDER,
            service=service,
            subject_user_id=subject_user_id,
            units=1,
            unit_cost_usd=cost.cost_usd,
            cost_usd=cost.cost_usd,
            metadata=metadata,
            db_path=self.db_path,
        )

        return response
