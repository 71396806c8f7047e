import logging
import time
from collections import Counter
from typing import Callable, Iterable, List, Optional

from app.features.scan.schemas.scan import (
    BatchProgress,
    SeverityBreakdown,
    ValidationMessage,
    ValidationResult,
    ValidationSummary,
)
from app.platform.config import settings

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[BatchProgress], None]


class BatchValidator:
    """
    Validates URLs one at a time, pausing between calls to respect the W3C
    service's rate expectations. A failing URL never aborts the batch.
    """

    def __init__(self, client, delay_seconds: Optional[float] = None, sleep: Callable[[float], None] = time.sleep):
        delay = settings.W3C_REQUEST_DELAY_SECONDS if delay_seconds is None else delay_seconds
        self.client = client
        self.delay_seconds = max(delay, 0.0)
        self._sleep = sleep

    def validate_batch(self, urls: List[str], on_progress: Optional[ProgressCallback] = None) -> List[ValidationResult]:
        total = len(urls)
        results: List[ValidationResult] = []
        logger.info(f"Starting batch validation of {total} URLs")

        for index, url in enumerate(urls):
            if index > 0 and self.delay_seconds:
                self._sleep(self.delay_seconds)

            error_text = None
            try:
                result = self.client.validate_url(url)
            except Exception as e:
                error_text = str(e) or e.__class__.__name__
                logger.warning(f"Validation failed for {url}: {error_text}")
                result = failed_result(url, error_text)

            results.append(result)
            logger.debug(f"Validated {index + 1}/{total}: {url} (valid={result.is_valid})")

            if on_progress:
                on_progress(
                    BatchProgress(
                        completed=index + 1,
                        total=total,
                        current_url=url,
                        result=result,
                        error=error_text,
                    )
                )

        logger.info(f"Finished batch validation of {total} URLs")
        return results


def failed_result(url: str, error_text: str) -> ValidationResult:
    """Stand-in result for a URL the validator could not check."""
    return ValidationResult(
        url=url,
        errors=[
            ValidationMessage(
                type="validation_error",
                message=error_text,
                severity="critical",
            )
        ],
        warnings=[],
    )


def _round_half_up_percentage(part: int, whole: int) -> int:
    if whole <= 0:
        return 0
    return (part * 200 + whole) // (whole * 2)


def summarize_results(results: Iterable[ValidationResult]) -> ValidationSummary:
    results = list(results)

    error_types: Counter = Counter()
    warning_types: Counter = Counter()
    severities: Counter = Counter()
    valid = 0
    total_errors = 0
    total_warnings = 0

    for result in results:
        if result.is_valid:
            valid += 1
        total_errors += len(result.errors)
        total_warnings += len(result.warnings)
        for message in result.errors:
            error_types[message.type] += 1
            severities[message.severity] += 1
        for message in result.warnings:
            warning_types[message.type] += 1

    return ValidationSummary(
        total=len(results),
        valid=valid,
        invalid=len(results) - valid,
        total_errors=total_errors,
        total_warnings=total_warnings,
        error_types=dict(error_types),
        warning_types=dict(warning_types),
        severity_breakdown=SeverityBreakdown(**{k: severities.get(k, 0) for k in ("critical", "high", "medium", "low")}),
        valid_percentage=_round_half_up_percentage(valid, len(results)),
    )
