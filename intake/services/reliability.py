"""Retrying wrapper around the upstream generator."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol

from intake.config import (
    GENERATOR_MAX_AUTO_RETRIES,
    GENERATOR_RETRY_DELAY_SECONDS,
    GENERATOR_TIMEOUT_SECONDS,
)
from intake.models.medical import MedicalRecord
from intake.models.turn import ChatMessage
from intake.services.llm import GeneratorConfigurationError
from intake.services.response_parser import FALLBACK_REPLY, ValidationResult, validate_response
from intake.services.scheduler import Scheduler, backoff_delay, get_scheduler

logger = logging.getLogger(__name__)


class Generator(Protocol):
    async def generate(self, history: list[ChatMessage], record: MedicalRecord, prompt: str) -> str: ...


@dataclass(frozen=True)
class GenerationOutcome:
    result: ValidationResult
    attempts: int
    delays: tuple[float, ...] = ()

    @property
    def exhausted(self) -> bool:
        return not self.result.is_valid

    @property
    def reply(self) -> str:
        return self.result.reply

    @property
    def was_recovered(self) -> bool:
        return self.result.was_recovered or (self.result.is_valid and self.attempts > 1)


class ReliableGenerator:
    """Validate every upstream reply and retry invalid ones with backoff.

    At most ``1 + max_auto_retries`` calls are made. Waits between calls go
    through the injected scheduler, ``base_delay * 2**(attempt-1)``. When every
    attempt fails the outcome carries the fixed apology reply so the turn can
    still be recorded. Configuration errors and cancellation propagate.
    """

    def __init__(
        self,
        generator: Generator,
        scheduler: Scheduler | None = None,
        *,
        max_auto_retries: int = GENERATOR_MAX_AUTO_RETRIES,
        base_delay: float = GENERATOR_RETRY_DELAY_SECONDS,
        timeout: float | None = GENERATOR_TIMEOUT_SECONDS,
    ) -> None:
        self.generator = generator
        self.scheduler = scheduler or get_scheduler()
        self.max_auto_retries = max(0, max_auto_retries)
        self.base_delay = base_delay
        self.timeout = timeout

    async def _call(self, history: list[ChatMessage], record: MedicalRecord, prompt: str) -> str:
        call = self.generator.generate(history, record, prompt)
        if self.timeout:
            return await asyncio.wait_for(call, timeout=self.timeout)
        return await call

    async def generate(
        self,
        history: list[ChatMessage],
        record: MedicalRecord,
        prompt: str,
    ) -> GenerationOutcome:
        total_attempts = 1 + self.max_auto_retries
        delays: list[float] = []
        last = ValidationResult(is_valid=False, reply=FALLBACK_REPLY, error="No attempt made")

        for attempt in range(1, total_attempts + 1):
            try:
                text = await self._call(history, record, prompt)
                last = validate_response(text)
            except GeneratorConfigurationError:
                raise
            except asyncio.TimeoutError:
                logger.error("Generator timed out after %.1fs (attempt %d/%d)", self.timeout, attempt, total_attempts)
                last = ValidationResult(is_valid=False, reply=FALLBACK_REPLY, error="Generator timed out")
            except Exception as e:
                logger.error("Generator call failed (attempt %d/%d): %s", attempt, total_attempts, e)
                last = ValidationResult(is_valid=False, reply=FALLBACK_REPLY, error=str(e))

            if last.is_valid:
                if attempt > 1:
                    logger.info("Generator recovered on attempt %d", attempt)
                return GenerationOutcome(result=last, attempts=attempt, delays=tuple(delays))

            if attempt < total_attempts:
                delay = backoff_delay(self.base_delay, attempt)
                logger.warning(
                    "Invalid generator response (%s); retrying in %.2fs", last.error, delay
                )
                delays.append(delay)
                await self.scheduler.sleep(delay)

        logger.error("Generator retries exhausted after %d attempts; using fallback reply", total_attempts)
        return GenerationOutcome(
            result=ValidationResult(
                is_valid=False,
                reply=FALLBACK_REPLY,
                error=last.error,
                details=last.details,
            ),
            attempts=total_attempts,
            delays=tuple(delays),
        )
