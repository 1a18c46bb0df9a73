"""
Default Sweep Module

Batch job that marks ACTIVE loans as DEFAULTED once any installment has been
pending for longer than the configured number of days.
"""

from datetime import date, timedelta
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .audit import AuditEventType
from .auth import AuthContext, system_context
from .exceptions import LendingError, UnauthorizedAccess
from .loans import Loan, LoanLifecycle, LoanStatus
from .logging_config import get_logger, log_action
from .schedule import ScheduleStatus


logger = get_logger("lending.default_sweep")


@dataclass
class SweepResult:
    """Counters for one sweep run"""
    processed: int = 0
    defaulted: int = 0
    skipped: int = 0
    failed: int = 0
    defaulted_loan_ids: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            'processed': self.processed,
            'defaulted': self.defaulted,
            'skipped': self.skipped,
            'failed': self.failed,
            'defaulted_loan_ids': list(self.defaulted_loan_ids),
            'errors': dict(self.errors)
        }


class DefaultSweep:
    """
    Scans ACTIVE loans and defaults those with long-overdue installments.

    Each loan is re-read under its own lock, so a repayment that lands while
    the sweep runs is either seen in full or not at all. A failure on one
    loan is logged and counted; the batch carries on.
    """

    def __init__(self, lifecycle: LoanLifecycle):
        self.lifecycle = lifecycle
        self.repository = lifecycle.repository
        self.schedule = lifecycle.schedule
        self.audit_trail = lifecycle.audit_trail
        self.authorization = lifecycle.authorization
        self.storage = lifecycle.storage
        self.cfg = lifecycle.cfg

    def run(self, auth: AuthContext, as_of: Optional[date] = None) -> SweepResult:
        """
        Run the sweep within the caller's scope

        ADMIN sweeps every ACTIVE loan, branch staff only loans of their
        branch. Any other role is refused.

        Raises:
            UnauthorizedAccess: If the caller may not run the sweep
        """
        self._require_sweep_role(auth)

        as_of = as_of or date.today()
        cutoff = as_of - timedelta(days=self.cfg.max_overdue_days)
        result = SweepResult()

        candidates = self.repository.find_by_status(LoanStatus.ACTIVE)
        logger.info(f"Default sweep started: {len(candidates)} active loans, cutoff {cutoff.isoformat()}")

        for candidate in candidates:
            try:
                self._sweep_loan(candidate, cutoff, auth, result)
            except LendingError as e:
                result.failed += 1
                result.errors[candidate.loan_id] = e.message
                logger.error(f"Default sweep failed for loan {candidate.loan_id}: {e.message}")
            except Exception as e:
                result.failed += 1
                result.errors[candidate.loan_id] = str(e)
                logger.exception(f"Unexpected error sweeping loan {candidate.loan_id}")

        self.audit_trail.log_event(
            event_type=AuditEventType.DEFAULT_SWEEP_COMPLETED,
            entity_type="sweep",
            entity_id=as_of.isoformat(),
            metadata=result.to_dict(),
            user_id=auth.username
        )
        log_action(
            logger, "info", "Default sweep completed",
            user_id=auth.username, action="loan.default_sweep", resource=as_of.isoformat(),
            extra={
                "processed": result.processed,
                "defaulted": result.defaulted,
                "skipped": result.skipped,
                "failed": result.failed
            }
        )
        return result

    def run_scheduled(self, as_of: Optional[date] = None) -> Optional[SweepResult]:
        """Scheduler entry point; runs as the system principal and never raises"""
        try:
            return self.run(system_context(self.cfg), as_of)
        except Exception:
            logger.exception("Scheduled default sweep failed")
            return None

    def _require_sweep_role(self, auth: AuthContext) -> None:
        if auth.is_admin:
            return
        if auth.is_branch_staff and auth.branch_id:
            return
        log_action(
            logger, "warning", "Access denied to default sweep",
            user_id=auth.username, action="loan.default_sweep", extra=auth.describe()
        )
        self.audit_trail.log_event(
            event_type=AuditEventType.ACCESS_DENIED,
            entity_type="sweep",
            entity_id="*",
            metadata={"action": "default_sweep", **auth.describe()},
            user_id=auth.username
        )
        if auth.is_branch_staff:
            raise UnauthorizedAccess("User has no assigned branch")
        raise UnauthorizedAccess(f"Role {auth.role.value} is not authorized to run the default sweep")

    def _sweep_loan(self, candidate: Loan, cutoff: date, auth: AuthContext, result: SweepResult) -> None:
        with self.repository.lock(candidate.loan_id) as loan:
            if loan.loan_status != LoanStatus.ACTIVE:
                result.skipped += 1
                return

            view = self.lifecycle.project(loan)
            if not auth.is_admin and not self.authorization.can_access_loan(auth, view):
                # Outside the caller's branch
                return

            result.processed += 1
            overdue = [e for e in self.schedule.load(loan.id) if e.is_pending and e.due_date < cutoff]
            if not overdue:
                return

            with self.storage.atomic():
                for entry in overdue:
                    entry.status = ScheduleStatus.OVERDUE
                    self.schedule.save_entry(entry)

                loan.loan_status = LoanStatus.DEFAULTED
                loan.remarks = (
                    f"Loan defaulted - {len(overdue)} installments overdue by more than "
                    f"{self.cfg.max_overdue_days} days"
                )
                self.repository.save(loan)

                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_DEFAULTED,
                    entity_type="loan",
                    entity_id=loan.loan_id,
                    metadata={
                        "overdue_installments": len(overdue),
                        "oldest_due_date": overdue[0].due_date,
                        "outstanding_balance": loan.outstanding_balance
                    },
                    user_id=auth.username
                )

            result.defaulted += 1
            result.defaulted_loan_ids.append(loan.loan_id)
            logger.warning(f"Loan {loan.loan_id} defaulted with {len(overdue)} overdue installments")
