# backend/plate_history/recognition.py

import logging

import httpx
from pydantic import ValidationError

from . import config, schemas
from .exceptions import RecognitionAPIError, RecognitionUnavailableError

logger = logging.getLogger(__name__)


class RecognitionClient:
    """Thin client for the plate recognition service."""

    def __init__(self, base_url=None, timeout=None, transport=None):
        self.base_url = base_url or config.RECOGNITION_API_URL
        self.timeout = timeout if timeout is not None else config.RECOGNITION_TIMEOUT
        self.transport = transport

    def _post(self, path, **kwargs):
        url = f"{self.base_url}{path}"
        logger.info("Forwarding request to: %s", url)
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(url, **kwargs)
        except httpx.TransportError as e:
            raise RecognitionUnavailableError(
                f"Could not connect to recognition service at {self.base_url}"
            ) from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.is_error:
            logger.error("Recognition service error: %s %s", response.status_code, body)
            raise RecognitionAPIError(response.status_code, body)
        if body is None:
            raise RecognitionAPIError(response.status_code, None, "Recognition service returned no JSON body")

        try:
            return schemas.RecognitionResponse.model_validate(body)
        except ValidationError as e:
            raise RecognitionAPIError(response.status_code, body, "Unexpected recognition response shape") from e

    def process_image(self, filename, content, content_type):
        return self._post("/process-image", files={"file": (filename, content, content_type)})

    def process_image_url(self, url):
        return self._post("/process-image-url", json={"url": url})
