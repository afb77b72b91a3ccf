import logging

from . import celery_app
from .services.transfer_service import build_transfer_service

logger = logging.getLogger(__name__)


@celery_app.task(name="app.cleanup.cleanup_expired")
def cleanup_expired():
    # Each transfer is removed in its own short transaction, so foreground
    # downloads and uploads are never blocked behind the sweep
    deleted = build_transfer_service().cleanup_expired_transfers()
    logger.info("Cleanup sweep removed %d expired transfers", deleted)
    return {"deleted": deleted}
