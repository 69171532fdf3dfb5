import logging
from typing import Callable, Optional
from datetime import datetime

from ..config.config import settings
from ..db.db_client import AsyncPostgresClient
from ..models.db_models import EnrollmentTemplate
from ..tools.descriptor_extractor import extract_descriptor, ExtractionError, ExtractionTimeout
from .errors import ServiceError, EnrollmentRejected, TemplateNotFound
from .session_service import utc_now

logger = logging.getLogger(__name__)


class EnrollmentService:
    """Face data setup: the only writer of enrollment templates."""

    def __init__(self, db_client: AsyncPostgresClient, extractor=extract_descriptor, clock: Callable[[], datetime] = utc_now):
        self.db_client = db_client
        self._extractor = extractor
        self._clock = clock

    async def setup_template(
        self, student_id: str, image_bytes: bytes, content_type: str, setup_by: Optional[str] = None
    ) -> EnrollmentTemplate:
        """Extracts a descriptor from the image and stores it as the student's template, replacing any previous one."""
        try:
            extracted = await self._extractor(image_bytes, content_type)
        except ExtractionError as e:
            logger.warning(f"Enrollment image of '{student_id}' rejected by the extractor: {e.reason.value}")
            raise EnrollmentRejected(f"Face data could not be extracted: {e.reason.value}.") from e
        except ExtractionTimeout as e:
            logger.error(f"Extractor timed out during enrollment of '{student_id}'.")
            raise ServiceError("The face service did not answer in time. Please try again.") from e

        if extracted.quality < settings.MIN_ENROLLMENT_QUALITY:
            raise EnrollmentRejected(
                f"Face quality too low ({extracted.quality:.0%}). Minimum {settings.MIN_ENROLLMENT_QUALITY:.0%} is required."
            )

        template = EnrollmentTemplate(
            student_id=student_id,
            descriptor=extracted.descriptor,
            quality_score=extracted.quality,
            verified=True,
            setup_timestamp=self._clock(),
            setup_by=setup_by or student_id,
        )
        try:
            stored = await self.db_client.upsert_template(template)
        except Exception as e:
            logger.error(f"Error storing enrollment template of '{student_id}'.", exc_info=True)
            raise ServiceError("A server error occurred while saving face data.") from e

        logger.info(f"Enrollment template of '{student_id}' set up by '{template.setup_by}' (quality {extracted.quality:.2f}).")
        return stored

    async def get_template(self, student_id: str) -> EnrollmentTemplate:
        template = await self.db_client.get_template(student_id)
        if template is None:
            raise TemplateNotFound(f"'{student_id}' has no face enrollment.")
        return template
