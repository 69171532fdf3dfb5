import logging
import httpx
from pydantic import ValidationError

from ..config.config import settings
from ..models.pipeline_models import ExtractedDescriptor, ExtractionFailure

logger = logging.getLogger(__name__)


class ExtractionError(Exception):
    """The extractor could not produce a usable descriptor for the image."""

    def __init__(self, reason: ExtractionFailure, message: str = ""):
        self.reason = reason
        super().__init__(message or reason.value)


class ExtractionTimeout(Exception):
    """The extractor did not answer within the configured timeout."""
    pass


def _failure_from_response(response: httpx.Response) -> ExtractionFailure:
    try:
        body = response.json()
    except ValueError:
        return ExtractionFailure.UNAVAILABLE
    error = body.get("error") if isinstance(body, dict) else None
    try:
        return ExtractionFailure(error)
    except ValueError:
        return ExtractionFailure.UNAVAILABLE


async def extract_descriptor(image_bytes: bytes, content_type: str) -> ExtractedDescriptor:
    """
    Sends one captured frame to the descriptor extractor microservice.

    The service answers 200 with {descriptor, quality, liveness}, or 422 with
    {error: no_face | multiple_faces | poor_quality | invalid_image} when the
    frame is unusable. Anything else is treated as the service being unavailable.
    """
    files = {"image": ("capture", image_bytes, content_type)}

    async with httpx.AsyncClient(timeout=settings.EXTRACTION_TIMEOUT_SECONDS) as client:
        try:
            response = await client.post(f"{settings.DESCRIPTOR_EXTRACTOR_URL}/extract", files=files)
        except httpx.TimeoutException as e:
            raise ExtractionTimeout(f"Descriptor extractor timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ExtractionError(ExtractionFailure.UNAVAILABLE, f"Descriptor extractor request failed: {e}") from e

    if response.status_code == 422:
        failure = _failure_from_response(response)
        raise ExtractionError(failure, f"Extractor rejected the image: {failure.value}")
    if response.status_code != 200:
        raise ExtractionError(
            ExtractionFailure.UNAVAILABLE,
            f"Extractor error: {response.status_code} - {response.text}"
        )

    try:
        extracted = ExtractedDescriptor.model_validate_json(response.content)
    except ValidationError as e:
        logger.error(f"Extractor returned a malformed body: {e}")
        raise ExtractionError(ExtractionFailure.UNAVAILABLE, "Extractor returned a malformed response.") from e

    if len(extracted.descriptor) != settings.DESCRIPTOR_LENGTH:
        raise ExtractionError(
            ExtractionFailure.INVALID_DESCRIPTOR,
            f"Expected a descriptor of length {settings.DESCRIPTOR_LENGTH}, got {len(extracted.descriptor)}."
        )
    return extracted
