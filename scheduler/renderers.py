"""Report renderer interface and the adapters shipped with the engine.

Rendering and delivery live outside the engine; these adapters only hand a
due schedule to whatever does the work.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import httpx

from scheduler.models import RenderOutcome, Schedule

logger = logging.getLogger(__name__)


class ReportRenderer(ABC):
    """Produces (and delivers) the report for one firing.

    Must be safe to call concurrently for distinct schedules. Raising is
    allowed; the scheduler records any exception as a failed run.
    """

    @abstractmethod
    async def render(self, schedule: Schedule) -> RenderOutcome:
        ...


class LoggingRenderer(ReportRenderer):
    """Dry-run renderer: logs what would be produced and reports success."""

    async def render(self, schedule: Schedule) -> RenderOutcome:
        formats = [f.value for f in schedule.output_formats]
        logger.info(
            "[DRY RUN] Would render report",
            extra={
                "schedule_id": schedule.schedule_id,
                "report": schedule.name,
                "formats": formats,
                "recipients": schedule.recipients,
            },
        )
        return RenderOutcome.success(f"dry-run://{schedule.schedule_id}/{'+'.join(formats)}")


class HttpReportRenderer(ReportRenderer):
    """POST the schedule to an external render service.

    A 2xx response is a success; ``artifact_ref`` (or ``id``) from the JSON
    body becomes the artifact reference. Any other status or transport
    error is a failed outcome.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 60.0,
        headers: dict | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.timeout = timeout
        self.headers = headers or {}
        self._transport = transport

    async def render(self, schedule: Schedule) -> RenderOutcome:
        payload = {
            "schedule_id": schedule.schedule_id,
            "name": schedule.name,
            "output_formats": [f.value for f in schedule.output_formats],
            "recipients": schedule.recipients,
            "scheduled_for": schedule.next_run.isoformat() if schedule.next_run else None,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, json=payload, headers=self.headers)
        except httpx.HTTPError as e:
            return RenderOutcome.failure(f"Render service unreachable: {e}")

        if response.is_success:
            try:
                body = response.json()
            except ValueError:
                body = {}
            ref = (body.get("artifact_ref") or body.get("id")) if isinstance(body, dict) else None
            return RenderOutcome.success(ref)
        return RenderOutcome.failure(f"Render service returned HTTP {response.status_code}: {response.text[:200]}")


def build_renderer(settings) -> ReportRenderer:
    """HttpReportRenderer when a render service URL is configured, else dry-run."""
    if settings.renderer_url:
        return HttpReportRenderer(settings.renderer_url, timeout=settings.renderer_timeout_seconds)
    return LoggingRenderer()
