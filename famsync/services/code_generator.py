"""Join-code generation.

Codes are short ``A-Z0-9`` strings.  Global uniqueness comes from the
injected availability check (backed by the store), not from the randomness
source, so ``secrets`` is used only to keep codes from being cheap to guess.
"""

import logging
import secrets
from collections.abc import Awaitable, Callable

from famsync.config import settings
from famsync.errors import CodeGenerationFailed, CodeGenerationFailure
from famsync.services.validation import (
    CODE_ALPHABET,
    CODE_MAX_LENGTH,
    CODE_MIN_LENGTH,
    is_valid_family_code_format,
)

logger = logging.getLogger(__name__)

# Returns True when the candidate code is still available
UniquenessCheck = Callable[[str], Awaitable[bool]]


class CodeGenerator:
    """Generate join codes and resolve collisions against a uniqueness check."""

    def __init__(
        self,
        code_length: int = settings.FAMILY_CODE_LENGTH,
        max_retries: int = settings.CODE_MAX_RETRIES,
    ) -> None:
        self.code_length = max(CODE_MIN_LENGTH, min(CODE_MAX_LENGTH, code_length))
        self.max_retries = max_retries

    def generate(self) -> str:
        """Return a random code of ``code_length`` characters."""
        return "".join(secrets.choice(CODE_ALPHABET) for _ in range(self.code_length))

    @staticmethod
    def is_valid_format(code: str) -> bool:
        return is_valid_family_code_format(code)

    async def generate_unique(self, check_fn: UniquenessCheck) -> str:
        """Generate a code that *check_fn* reports as available.

        A ``False`` answer counts as a collision and triggers a fresh
        candidate, up to ``max_retries`` candidates in total.  An exception
        from *check_fn* aborts immediately with
        ``UNIQUENESS_CHECK_FAILED``.  Cancellation propagates untouched and is
        never counted as a collision.

        Raises:
            CodeGenerationFailed: on exhausted retries, a failing check, or a
                malformed candidate.
        """
        for attempt in range(1, self.max_retries + 1):
            code = self.generate()
            if not self.is_valid_format(code):
                raise CodeGenerationFailed(
                    CodeGenerationFailure.FORMAT_VALIDATION_FAILED, attempts=attempt,
                )

            try:
                available = await check_fn(code)
            except Exception as exc:
                logger.warning("Uniqueness check failed on attempt %d: %s", attempt, exc)
                raise CodeGenerationFailed(
                    CodeGenerationFailure.UNIQUENESS_CHECK_FAILED, cause=exc, attempts=attempt,
                ) from exc

            if available:
                logger.info("Generated unique family code after %d attempt(s)", attempt)
                return code

            logger.debug("Code collision on attempt %d/%d", attempt, self.max_retries)

        logger.error("No unique family code after %d attempts", self.max_retries)
        raise CodeGenerationFailed(
            CodeGenerationFailure.MAX_ATTEMPTS_EXCEEDED, attempts=self.max_retries,
        )
