import structlog
from sqlalchemy.exc import SQLAlchemyError

from marketplace.models import ReconciliationIssue

logger = structlog.get_logger(__name__)


def record_issue(db, kind, *, reference=None, order_id=None, detail=None, payload=None):
    """Persist a ReconciliationIssue in its own commit.

    Returns False when even that write fails; the caller has already logged
    the underlying problem, so this only adds a second log line.
    """
    try:
        db.add(ReconciliationIssue(
            kind=kind,
            reference=reference,
            order_id=order_id,
            detail=detail,
            payload=payload,
        ))
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("reconciliation_issue_not_recorded", kind=kind,
                         reference=reference, order_id=order_id)
        return False
    return True
