import aiohttp
from sanic.log import logger

from cd_relay import metrics
from cd_relay.models import AuditEvent


class AuditSink:
    """Best-effort delivery of audit events; never raises."""

    def __init__(self, session: aiohttp.ClientSession, url: str):
        self.session = session
        self.url = url

    async def post(self, event: AuditEvent) -> None:
        logger.info("Audit [%s] %s/%s: %s", event.source, event.owner, event.repo, event.message)
        metrics.audit_events_total.labels(event.source).inc()

        if not self.url:
            return

        try:
            async with self.session.post(self.url, json=event.model_dump()) as resp:
                if not 200 <= resp.status < 300:
                    logger.warning("Audit endpoint returned status %d", resp.status)
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.warning("Unable to post audit event: %s", e)
            metrics.audit_errors_total.labels(type(e).__name__).inc()
