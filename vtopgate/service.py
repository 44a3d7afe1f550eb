"""
Portal service: the two data flows behind the HTTP surface.

Per request:
1. Authenticate the principal through the registry (reuse or log in once).
2. Fan out the section fetchers concurrently; a failed section is None.
3. Refresh the session's idle clock and build the payload.
Any error escaping step 2 or 3 invalidates the principal's session.

Background:
- sweep_sessions every session_sweep_interval_seconds (IntervalTrigger)
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from vtopgate.captcha_solver import get_captcha_solver
from vtopgate.config import settings
from vtopgate.login import LoginOrchestrator
from vtopgate.portal_client import PortalClient
from vtopgate.portal_data import (
    fetch_attendance,
    fetch_detailed_attendance,
    fetch_digital_assignments,
    fetch_exam_schedule,
    fetch_fee_receipts,
    fetch_grade_history,
    fetch_grade_view,
    fetch_marks,
    fetch_section,
    fetch_semester_list,
    fetch_student_profile,
    fetch_time_table,
)
from vtopgate.sessions import SessionRegistry

logger = logging.getLogger(__name__)


def isoformat_utc(value: datetime) -> str:
    """`2026-10-19T10:00:00.123Z`"""
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )


def _now_iso() -> str:
    return isoformat_utc(datetime.now(timezone.utc))


class PortalService:
    """Owns the session registry and serves the initial/semester payloads."""

    def __init__(self, registry: SessionRegistry):
        self._registry = registry
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    async def fetch_initial_data(self, username: str, password: str) -> dict:
        session, is_new = await self._registry.authenticate(username, password)
        try:
            profile, grade_history, semester_list, fee_receipts = await asyncio.gather(
                fetch_section("student profile", fetch_student_profile(session)),
                fetch_section("grade history", fetch_grade_history(session)),
                fetch_section("semester list", fetch_semester_list(session)),
                fetch_section("fee receipts", fetch_fee_receipts(session)),
            )
            await self._registry.mark_used(username)

            return {
                "success": True,
                "studentId": session.auth.student_id,
                "csrf": session.auth.csrf_token,
                "profile": profile,
                "gradeHistory": grade_history,
                "semesterList": semester_list,
                "feeReceipts": fee_receipts,
                "sessionInfo": {
                    "isNewSession": is_new,
                    "created": isoformat_utc(session.created_at),
                    "expiresIn": int(self._registry.idle_timeout),
                },
                "fetchTimestamp": _now_iso(),
            }
        except Exception:
            logger.error("Initial data fetch failed for %s", username, exc_info=True)
            await self._registry.invalidate(username, session)
            raise

    async def fetch_semester_data(self, username: str, password: str, semester_id: str) -> dict:
        session, is_new = await self._registry.authenticate(username, password)
        try:
            (
                time_table,
                attendance,
                marks,
                exam_schedule,
                grade_view,
                assignments,
            ) = await asyncio.gather(
                fetch_section("timetable", fetch_time_table(session, semester_id)),
                fetch_section("attendance", fetch_attendance(session, semester_id)),
                fetch_section("marks", fetch_marks(session, semester_id)),
                fetch_section("exam schedule", fetch_exam_schedule(session, semester_id)),
                fetch_section("grade view", fetch_grade_view(session, semester_id)),
                fetch_section("digital assignments", fetch_digital_assignments(session, semester_id)),
            )
            detailed = await fetch_section(
                "detailed attendance",
                fetch_detailed_attendance(session, attendance, semester_id),
            )
            await self._registry.mark_used(username)

            return {
                "success": True,
                "semesterId": semester_id,
                "data": {
                    "timeTable": time_table,
                    "attendance": {"summary": attendance, "detailed": detailed},
                    "marks": marks,
                    "examSchedule": exam_schedule,
                    "gradeView": grade_view,
                    "assignments": assignments,
                },
                "sessionInfo": {
                    "isNewSession": is_new,
                    "lastUsed": isoformat_utc(self._registry.last_used_at(session)),
                    "expiresIn": self._registry.expires_in(session),
                },
                "fetchTimestamp": _now_iso(),
            }
        except Exception:
            logger.error("Semester data fetch failed for %s", username, exc_info=True)
            await self._registry.invalidate(username, session)
            raise

    def health(self) -> dict:
        return {"status": "ok", "activeSessions": len(self._registry)}

    async def start(self) -> None:
        """Start the sweep scheduler. Must run on the service's event loop."""
        self._scheduler = setup_scheduler(self._registry)
        self._scheduler.start()
        logger.info(
            "Session sweep scheduled every %ss (idle timeout %ss)",
            settings.session_sweep_interval_seconds, self._registry.idle_timeout,
        )

    async def shutdown(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        await self._registry.close_all()


def setup_scheduler(registry: SessionRegistry) -> AsyncIOScheduler:
    """Configure and return the APScheduler instance."""
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        registry.sweep,
        IntervalTrigger(seconds=settings.session_sweep_interval_seconds),
        id="sweep_sessions",
        name="sweep_sessions",
    )

    return scheduler


def build_service() -> PortalService:
    """Wire solver, orchestrator and registry from settings."""
    orchestrator = LoginOrchestrator(get_captcha_solver())
    registry = SessionRegistry(
        client_factory=PortalClient,
        login=orchestrator.attempt_login,
    )
    return PortalService(registry)
