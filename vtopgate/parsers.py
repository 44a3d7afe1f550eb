"""
HTML extractors for authenticated VTOP pages.

Pure functions: HTML string in, JSON-ready dict/list out, with the portal's
camelCase keys. Numbers follow the portal's loose formatting: a leading
numeric prefix is read ("12 credits" -> 12), anything else falls back to 0
or None as noted per field.
"""

from __future__ import annotations

import logging
import re

from bs4 import BeautifulSoup, Tag

logger = logging.getLogger(__name__)

_STUDENT_ID_RE = re.compile(r'var\s+id\s*=\s*"([^"]+)"')
_CSRF_RE = re.compile(r'name="_csrf"\s+value="([^"]+)"')
_INT_PREFIX_RE = re.compile(r"\s*([+-]?\d+)")
_FLOAT_PREFIX_RE = re.compile(r"\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")
_GPA_RE = re.compile(r"GPA\s*:\s*(\d+\.\d+)")
_COURSE_ID_RE = re.compile(r"VL_[A-Z0-9]+_\d+")
_COURSE_TYPE_RE = re.compile(r",'([A-Z]+)'\);")
_QUOTED_ARG_RE = re.compile(r"'([^']+)'")
_SERIAL_RE = re.compile(r"^\d+$")
_WHITESPACE_RE = re.compile(r"\s+")

_NON_GPA_ROW_COLOUR = "C0D8C0"

_PROFILE_SECTIONS = (
    ("collapseOne", "personalInformation"),
    ("collapseTwo", "educationalInformation"),
    ("collapseThree", "familyInformation"),
    ("collapseFour", "proctorInformation"),
    ("collapseFive", "hostelInformation"),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _soup(html: str | None) -> BeautifulSoup:
    return BeautifulSoup(html or "", "html.parser")


def _to_int(text: str | None, default: int | None = 0) -> int | None:
    match = _INT_PREFIX_RE.match(text or "")
    return int(match.group(1)) if match else default


def _to_float(text: str | None, default: float | None = 0.0) -> float | None:
    match = _FLOAT_PREFIX_RE.match(text or "")
    return float(match.group(1)) if match else default


def _text(node: Tag | None) -> str:
    return node.get_text().strip() if node is not None else ""


def _cell(cells: list[Tag], index: int) -> Tag | None:
    return cells[index] if index < len(cells) else None


def _outermost(node: Tag | None, name: str) -> list[Tag]:
    """Descendant `name` tags that are not nested inside another `name`."""
    if node is None:
        return []
    found = []
    for tag in node.find_all(name):
        parent = tag.parent
        while parent is not None and parent is not node and parent.name != name:
            parent = parent.parent
        if parent is node:
            found.append(tag)
    return found


def _joined_text(node: Tag | None, name: str) -> str:
    """Text of every outermost `name` descendant, concatenated and trimmed."""
    return "".join(tag.get_text() for tag in _outermost(node, name)).strip()


def _nested_span_text(node: Tag | None) -> str:
    """Text of `span span` descendants."""
    if node is None:
        return ""
    return "".join(tag.get_text() for tag in node.select("span span")).strip()


def _drop_separator(text: str) -> str:
    """Strip the " - " separator the portal leaves in some cells (`A1+TA1 -`)."""
    return text.replace(" - ", "", 1).rstrip(" -")


def _body_rows(table: Tag | None) -> list[Tag]:
    if table is None:
        return []
    tbody = table.find("tbody")
    return (tbody or table).find_all("tr")


def _labelled_value(node: Tag | None, label: str) -> Tag | None:
    """The <span> directly following the <b> whose text contains `label`."""
    if node is None:
        return None
    for bold in node.find_all("b"):
        if label in bold.get_text():
            sibling = bold.find_next_sibling()
            if sibling is not None and sibling.name == "span":
                return sibling
    return None


def _field_value(field: Tag | None) -> str | None:
    """Current value of an <input> or <select>, like a browser form would send."""
    if field is None:
        return None
    if field.name == "select":
        options = field.find_all("option")
        chosen = next((o for o in options if o.has_attr("selected")), None)
        chosen = chosen or (options[0] if options else None)
        if chosen is None:
            return None
        return chosen.get("value", chosen.get_text())
    return field.get("value")


# ---------------------------------------------------------------------------
# Login landing page
# ---------------------------------------------------------------------------

def extract_student_id(html: str | None) -> str | None:
    """The `var id = "..."` value the portal embeds after login."""
    match = _STUDENT_ID_RE.search(html or "")
    return match.group(1) if match else None


def extract_csrf_token(html: str | None) -> str | None:
    """The post-login _csrf token from the hidden form field."""
    field = _soup(html).find("input", attrs={"name": "_csrf"})
    if field is not None and field.get("value"):
        return field["value"]
    match = _CSRF_RE.search(html or "")
    return match.group(1) if match else None


# ---------------------------------------------------------------------------
# Initial data pages
# ---------------------------------------------------------------------------

def parse_cgpa_details(html: str) -> dict | None:
    """
    Credits, CGPA and grade distribution from the grade history page.

    Returns None when the table is missing or every headline value reads 0.
    """
    rows = _soup(html).select("table.table-hover.table-bordered tr")
    if not rows:
        logger.info("CGPA details table not found")
        return None

    cells = [cell for row in rows for cell in row.find_all("td")]
    values = [_text(_cell(cells, i)) for i in range(11)]

    details = {
        "creditsRegistered": _to_float(values[0]),
        "creditsEarned": _to_float(values[1]),
        "cgpa": _to_float(values[2]),
        "grades": {
            grade: _to_int(values[3 + i]) for i, grade in enumerate("SABCDEFN")
        },
    }
    if details["cgpa"] == 0 and details["creditsEarned"] == 0:
        logger.warning("CGPA details all zero, treating as not found")
        return None
    return details


def parse_semester_list(html: str) -> list[dict] | None:
    """Options of the semester selector, minus the empty placeholder."""
    select = _soup(html).find(id="semesterSubId")
    if select is None:
        logger.info("Semester select not found")
        return None
    return [
        {"id": option["value"], "name": option.get_text().strip()}
        for option in select.find_all("option")
        if (option.get("value") or "").strip()
    ]


def parse_student_profile(html: str) -> dict:
    """Label/value rows of each profile accordion section, plus photos."""
    soup = _soup(html)
    profile: dict = {key: {} for _, key in _PROFILE_SECTIONS}

    for section_id, key in _PROFILE_SECTIONS:
        section = soup.find(id=section_id)
        if section is None:
            continue
        for row in section.select("table tr"):
            cells = row.find_all("td")
            if not cells:
                continue
            label = _text(cells[0])
            value = _text(cells[-1])
            if label and value:
                profile[key][_WHITESPACE_RE.sub("_", label.lower())] = value

    student_photo = soup.select_one(".col-4.mt-4.mb-3 img")
    proctor_photo = soup.select_one(
        'td[style*="background-color: #FAF0DD;"][rowspan="4"] img'
    )
    profile["photos"] = {
        "studentPhoto": (student_photo.get("src") or None) if student_photo else None,
        "proctorPhoto": (proctor_photo.get("src") or None) if proctor_photo else None,
    }
    return profile


def parse_fee_receipts(html: str) -> dict:
    soup = _soup(html)
    applno = soup.find("input", attrs={"name": "applno"})
    regno = soup.find("input", attrs={"name": "regno"})

    receipts = []
    # Row 0 of the first bordered table is its header.
    for row in soup.select(".table-bordered tr")[1:]:
        cells = row.find_all("td")
        if len(cells) < 5:
            continue
        receipts.append({
            "invoiceNumber": _text(cells[0]),
            "receiptNumber": _text(cells[1]),
            "date": _text(cells[2]),
            "amount": _to_float(_text(cells[3])),
            "campusCode": _text(cells[4]),
        })

    return {
        "applicationNumber": _field_value(applno),
        "registrationNumber": _field_value(regno),
        "receipts": receipts,
    }


# ---------------------------------------------------------------------------
# Semester pages
# ---------------------------------------------------------------------------

def parse_time_table(html: str) -> dict:
    """
    Registered courses from the first table on the timetable page.

    The "code - name" cell is split into code/name when it has exactly two
    parts; otherwise `course.name` keeps the list of parts.
    """
    timetable: dict = {"courses": [], "totalCredits": ""}
    table = _soup(html).find("table")
    if table is None:
        return timetable

    for index, row in enumerate(table.find_all("tr")):
        if row.find("td", colspan=True) is not None:
            spans = row.find_all("span")
            timetable["totalCredits"] = _text(spans[-1]) if spans else ""
            continue
        if index == 0:
            continue

        cells = row.find_all("td")
        if len(cells) < 12:
            continue

        course_ps = cells[2].find_all("p")
        name_parts = _text(course_ps[0]).split(" - ") if course_ps else [""]
        course_type = re.sub(r"[()]", "", _text(course_ps[-1])).strip() if course_ps else ""
        slot_ps = cells[7].find_all("p")
        faculty_ps = cells[8].find_all("p")

        if len(name_parts) == 2:
            course = {"code": name_parts[0], "name": name_parts[1], "type": course_type}
        else:
            course = {"name": name_parts, "type": course_type}

        timetable["courses"].append({
            "slNo": _joined_text(cells[0], "p"),
            "classGroup": _joined_text(cells[1], "p"),
            "course": course,
            "credits": _joined_text(cells[3], "p"),
            "category": _joined_text(cells[4], "span"),
            "courseOption": _joined_text(cells[5], "p"),
            "classId": _joined_text(cells[6], "p"),
            "slot": {
                "timing": _drop_separator(_text(slot_ps[0])) if slot_ps else "",
                "venue": _text(slot_ps[-1]) if slot_ps else "",
            },
            "faculty": {
                "name": _drop_separator(_text(faculty_ps[0])) if faculty_ps else "",
                "school": _text(faculty_ps[-1]) if faculty_ps else "",
            },
            "registrationDate": _joined_text(cells[9], "p"),
            "attendance": {
                "date": _joined_text(cells[10], "span"),
                "type": _drop_separator(_joined_text(cells[10], "strong")),
            },
            "status": _joined_text(cells[11], "span"),
        })

    return timetable


def parse_attendance(html: str) -> dict:
    """
    Per-course attendance summary.

    `courseId`/`courseType` come from the detail link's onclick handler and
    are needed to request the per-class detail page.
    """
    table = _soup(html).find(id="AttendanceDetailDataTable")
    courses = []

    for row in _body_rows(table):
        cells = row.find_all("td")
        if len(cells) < 10:
            continue

        link = row.select_one('a[id^="studentAttendanceDetilShow"]')
        onclick = (link.get("onclick") or "") if link is not None else ""
        course_id = _COURSE_ID_RE.search(onclick)
        course_type = _COURSE_TYPE_RE.search(onclick)

        course = {
            "slNo": _joined_text(cells[0], "span"),
            "classGroup": _joined_text(cells[1], "span"),
            "courseDetail": _joined_text(cells[2], "span"),
            "classDetail": _joined_text(cells[3], "span"),
            "facultyDetail": _joined_text(cells[4], "span"),
            "attendedClasses": _to_int(_joined_text(cells[5], "span")),
            "totalClasses": _to_int(_joined_text(cells[6], "span")),
            "attendancePercentage": _nested_span_text(cells[7]),
            "debarStatus": _WHITESPACE_RE.sub(" ", _text(cells[8])).strip(),
            "courseId": course_id.group(0) if course_id else None,
            "courseType": course_type.group(1) if course_type else None,
        }

        debar = cells[8].select("span span")
        if debar:
            course["debarStatus"] = {
                "examType": _text(debar[0]).replace(":", "", 1).strip(),
                "status": _text(debar[1]) if len(debar) > 1 else "",
            }

        courses.append(course)

    return {"courses": courses}


def parse_detailed_attendance(html: str) -> dict:
    """Course header and per-class records from an attendance detail page."""
    soup = _soup(html)
    detail: dict = {"courseInfo": {}, "attendanceRecords": []}

    info_rows = _body_rows(soup.find(id="StudentCourseDetailDataTable"))
    if info_rows:
        cells = info_rows[0].find_all("td")
        summary_cell = _cell(cells, 6)
        percentage = _labelled_value(summary_cell, "Percentage")

        detail["courseInfo"] = {
            "classGroup": _joined_text(_cell(cells, 0), "span"),
            "courseDetail": _joined_text(_cell(cells, 1), "span"),
            "classDetail": _joined_text(_cell(cells, 2), "span"),
            "facultyDetail": _joined_text(_cell(cells, 3), "span"),
            "registeredDateTime": _joined_text(_cell(cells, 4), "span"),
            "attendanceSummary": {
                "present": _to_int(_text(_labelled_value(summary_cell, "Present"))),
                "absent": _to_int(_text(_labelled_value(summary_cell, "Absent"))),
                "onDuty": _to_int(_text(_labelled_value(summary_cell, "On Duty"))),
                "attended": _to_int(_text(_labelled_value(summary_cell, "Attended"))),
                "totalClasses": _to_int(_text(_labelled_value(summary_cell, "Total Class"))),
                "percentage": _joined_text(percentage, "span"),
            },
        }

    for row in _body_rows(soup.find(id="StudentAttendanceDetailDataTable")):
        cells = row.find_all("td")
        detail["attendanceRecords"].append({
            "slNo": _joined_text(_cell(cells, 0), "span"),
            "date": _joined_text(_cell(cells, 1), "span"),
            "slot": _joined_text(_cell(cells, 2), "span"),
            "dayTime": _joined_text(_cell(cells, 3), "span"),
            # The portal only marks non-present statuses explicitly.
            "status": _nested_span_text(_cell(cells, 4)) or "Present",
        })

    return detail


def parse_marks(html: str) -> dict:
    """
    Courses with their assessment marks.

    A course row has nine cells; the row right after it holds the nested
    marks table. Unparseable numbers come back as None.
    """
    courses = []
    for row in _soup(html).select("tr.tableContent"):
        cells = row.find_all("td")
        if len(cells) != 9:
            continue

        marks = []
        marks_row = row.find_next_sibling("tr")
        if marks_row is not None:
            for mark_row in marks_row.select("table.customTable-level1 tr.tableContent-level1"):
                outputs = [_joined_text(cell, "output") for cell in mark_row.find_all("td")]
                outputs += [""] * (8 - len(outputs))
                marks.append({
                    "slNo": outputs[0],
                    "markTitle": outputs[1],
                    "maxMark": _to_float(outputs[2], None),
                    "weightagePercentage": _to_float(outputs[3], None),
                    "status": outputs[4],
                    "scoredMark": _to_float(outputs[5], None),
                    "weightageMark": _to_float(outputs[6], None),
                    "remark": outputs[7],
                })

        courses.append({
            "slNo": _text(cells[0]),
            "classNumber": _text(cells[1]),
            "courseCode": _text(cells[2]),
            "courseTitle": _text(cells[3]),
            "courseType": _text(cells[4]),
            "courseSystem": _text(cells[5]),
            "faculty": _text(cells[6]),
            "slot": _text(cells[7]),
            "courseMode": _text(cells[8]),
            "marks": marks,
        })

    return {"courses": courses}


def parse_exam_schedule(html: str) -> dict:
    """Exams grouped under their exam type header rows (FAT, CAT1, ...)."""
    exam_types: list[dict] = []
    current_type: str | None = None
    current_exams: list[dict] = []

    def _blank_dash(cell: Tag) -> str | None:
        return _joined_text(cell, "span").replace("-", "", 1) or None

    for row in _soup(html).select(".customTable tr.tableContent"):
        header = row.find("td", class_="panelHead-secondary")
        if header is not None:
            if current_type:
                exam_types.append({"type": current_type, "exams": current_exams})
            current_type = _text(header)
            current_exams = []
            continue

        cells = row.find_all("td")
        if len(cells) != 13 or "tableHeader" in (row.get("class") or []):
            continue

        current_exams.append({
            "slNo": _text(cells[0]),
            "courseCode": _text(cells[1]),
            "courseTitle": _text(cells[2]),
            "courseType": _text(cells[3]),
            "classId": _text(cells[4]),
            "slot": _text(cells[5]),
            "examDate": _text(cells[6]) or None,
            "examSession": _text(cells[7]) or None,
            "reportingTime": _text(cells[8]) or None,
            "examTime": _text(cells[9]) or None,
            "venue": _blank_dash(cells[10]),
            "seatLocation": _blank_dash(cells[11]),
            "seatNo": _blank_dash(cells[12]),
        })

    if current_type and current_exams:
        exam_types.append({"type": current_type, "exams": current_exams})

    return {"examTypes": exam_types}


def parse_grade_view(html: str) -> dict:
    """Semester grades; the colspan footer row carries the semester GPA."""
    courses = []
    gpa: float | None = None

    for index, row in enumerate(_soup(html).select("table.table-hover tr")):
        # Two header rows.
        if index < 2:
            continue

        if row.find("td", colspan=True) is not None:
            match = _GPA_RE.search(row.get_text())
            gpa = float(match.group(1)) if match else None
            continue

        cells = row.find_all("td")
        if len(cells) != 12:
            continue

        courses.append({
            "slNo": _text(cells[0]),
            "courseCode": _text(cells[1]),
            "courseTitle": _text(cells[2]),
            "courseType": _text(cells[3]),
            "credits": {
                "L": _to_int(_text(cells[4])),
                "P": _to_int(_text(cells[5])),
                "J": _to_int(_text(cells[6])),
                "C": _to_int(_text(cells[7])),
            },
            "gradingType": _text(cells[8]),
            "grandTotal": _to_int(_text(cells[9]), None),
            "grade": _text(cells[10]),
            "isNonGPACourse": _NON_GPA_ROW_COLOUR in (row.get("style") or "").upper(),
        })

    return {"courses": courses, "gpa": gpa}


def parse_digital_assignments(html: str) -> dict:
    """Courses on the digital assignment overview with their class ids."""
    soup = _soup(html)
    courses = []

    for row in soup.select(".customTable tr.tableContent"):
        cells = row.find_all("td")
        if len(cells) < 7:
            continue
        button = cells[6].find("button")
        onclick = (button.get("onclick") or "") if button is not None else ""
        class_id = _QUOTED_ARG_RE.search(onclick)
        courses.append({
            "slNo": _text(cells[0]),
            "classNumber": _text(cells[1]),
            "courseCode": _text(cells[2]),
            "courseTitle": _text(cells[3]),
            "courseType": _text(cells[4]),
            "facultyName": _text(cells[5]),
            "dashboardLink": {"classId": class_id.group(1) if class_id else None},
        })

    return {
        "semesterId": _field_value(soup.find(id="semesterSubId")),
        "courses": courses,
    }


def parse_assignment_details(html: str, course_code: str) -> dict | None:
    """
    Assignments of one course. Returns None when the page lists none with a
    title and a positive max mark.
    """
    soup = _soup(html)

    def _first_column(n: int) -> str:
        return _text(soup.select_one(f".customTable tr.tableContent td:nth-child({n})"))

    assignments = []
    for row in soup.select(".customTable tr.tableContent-level1, .customTable tr.tableContent"):
        cells = row.find_all("td")
        if len(cells) < 5:
            continue
        serial = _text(cells[0])
        if not _SERIAL_RE.match(serial):
            continue

        assignment = {
            "slNo": serial,
            "title": _text(cells[1]),
            "maxMark": _to_float(_text(cells[2])),
            "weightagePercentage": _to_float(_text(cells[3])),
            "dueDate": _joined_text(cells[4], "span"),
            "lastUpdatedOn": _text(_cell(cells, 6)),
        }
        if assignment["title"] and assignment["maxMark"] > 0:
            assignments.append(assignment)

    if not assignments:
        return None

    return {
        "courseCode": course_code,
        "courseTitle": _first_column(3),
        "courseType": _first_column(4),
        "classNumber": _first_column(5),
        "assignments": assignments,
    }
