"""
Authenticated portal fetchers.

Each fetcher issues its request(s) through Session.submit_authenticated_request
and hands the HTML to the matching parser. A failed section never fails the
whole payload: fetch_section() logs it and yields None.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Awaitable, TypeVar

from vtopgate.parsers import (
    parse_assignment_details,
    parse_attendance,
    parse_cgpa_details,
    parse_detailed_attendance,
    parse_digital_assignments,
    parse_exam_schedule,
    parse_fee_receipts,
    parse_grade_view,
    parse_marks,
    parse_semester_list,
    parse_student_profile,
    parse_time_table,
)
from vtopgate.sessions import Session

logger = logging.getLogger(__name__)

T = TypeVar("T")


def gmt_timestamp() -> str:
    """Current time as an RFC 1123 GMT string, e.g. `Mon, 19 Oct 2026 10:00:00 GMT`."""
    return format_datetime(datetime.now(timezone.utc), usegmt=True)


def _nocache() -> str:
    return str(int(time.time() * 1000))


def _menu_params() -> dict:
    return {"verifyMenu": "true", "nocache": _nocache()}


async def fetch_section(name: str, fetch: Awaitable[T]) -> T | None:
    """Await one section fetch; log and return None if it fails."""
    try:
        return await fetch
    except Exception:
        logger.warning("Failed to fetch %s", name, exc_info=True)
        return None


# ── Initial data ──

async def fetch_student_profile(session: Session) -> dict | None:
    html = await session.submit_authenticated_request(
        "studentsRecord/StudentProfileAllView", _menu_params(),
    )
    return parse_student_profile(html)


async def fetch_grade_history(session: Session) -> dict | None:
    html = await session.submit_authenticated_request(
        "examinations/examGradeView/StudentGradeHistory", _menu_params(),
    )
    return parse_cgpa_details(html)


async def fetch_semester_list(session: Session) -> list[dict] | None:
    html = await session.submit_authenticated_request(
        "academics/common/StudentTimeTable", _menu_params(),
    )
    return parse_semester_list(html)


async def fetch_fee_receipts(session: Session) -> dict | None:
    html = await session.submit_authenticated_request(
        "finance/getStudentReceipts", _menu_params(),
    )
    return parse_fee_receipts(html)


# ── Semester data ──

async def fetch_time_table(session: Session, semester_id: str) -> dict:
    html = await session.submit_authenticated_request(
        "processViewTimeTable", {"semesterSubId": semester_id, "x": gmt_timestamp()},
    )
    return {"timeTableData": parse_time_table(html), "semesterSubId": semester_id}


async def fetch_attendance(session: Session, semester_id: str) -> dict:
    html = await session.submit_authenticated_request(
        "processViewStudentAttendance", {"semesterSubId": semester_id, "x": gmt_timestamp()},
    )
    return parse_attendance(html)


async def _fetch_course_attendance(
    session: Session, semester_id: str, course: dict,
) -> dict | None:
    course_code = (course.get("courseDetail") or "").split(" - ")[0]
    try:
        html = await session.submit_authenticated_request(
            "processViewAttendanceDetail",
            {
                "semesterSubId": semester_id,
                "registerNumber": session.auth.student_id,
                "courseId": course["courseId"],
                "courseType": course["courseType"],
                "x": gmt_timestamp(),
            },
        )
    except Exception as e:
        logger.warning("Attendance detail for %s failed: %s", course_code, e)
        return None
    return {"courseCode": course_code, **parse_detailed_attendance(html)}


async def fetch_detailed_attendance(
    session: Session, attendance: dict | None, semester_id: str,
) -> dict | None:
    """Per-class attendance for every summary course with a detail link."""
    if not attendance or not attendance.get("courses"):
        return None

    linked = [c for c in attendance["courses"] if c.get("courseId") and c.get("courseType")]
    logger.info("Fetching detailed attendance for %d courses", len(linked))
    results = await asyncio.gather(
        *(_fetch_course_attendance(session, semester_id, c) for c in linked)
    )
    return {"semester": semester_id, "courses": [r for r in results if r is not None]}


async def fetch_marks(session: Session, semester_id: str) -> dict:
    html = await session.submit_authenticated_request(
        "examinations/doStudentMarkView", {"semesterSubId": semester_id},
    )
    return parse_marks(html)


async def fetch_exam_schedule(session: Session, semester_id: str) -> dict:
    html = await session.submit_authenticated_request(
        "examinations/doSearchExamScheduleForStudent", {"semesterSubId": semester_id},
    )
    return parse_exam_schedule(html)


async def fetch_grade_view(session: Session, semester_id: str) -> dict:
    html = await session.submit_authenticated_request(
        "examinations/examGradeView/doStudentGradeView", {"semesterSubId": semester_id},
    )
    return parse_grade_view(html)


async def _fetch_assignment_details(session: Session, course: dict) -> dict | None:
    class_id = (course.get("dashboardLink") or {}).get("classId")
    if not class_id:
        return None
    try:
        html = await session.submit_authenticated_request(
            "examinations/processDigitalAssignment",
            {"x": gmt_timestamp(), "classId": class_id},
        )
    except Exception as e:
        logger.warning("Assignment details for %s failed: %s", course.get("courseCode"), e)
        return None
    return parse_assignment_details(html, course.get("courseCode", ""))


async def fetch_digital_assignments(session: Session, semester_id: str) -> dict | None:
    """Assignment overview plus the details of every listed course."""
    html = await session.submit_authenticated_request(
        "examinations/doDigitalAssignment", {"semesterSubId": semester_id},
    )
    overview = parse_digital_assignments(html)
    if not overview["courses"]:
        return None

    details = await asyncio.gather(
        *(_fetch_assignment_details(session, c) for c in overview["courses"])
    )
    return {"overview": overview, "details": [d for d in details if d is not None]}
