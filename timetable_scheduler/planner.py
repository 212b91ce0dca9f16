"""Plan generation.

A plan is always ``{title, description, schedule: [{day, date, tasks,
totalHours, taskCount}]}`` where ``tasks`` is one newline-joined string of
``HH:MM - description`` lines, whatever strategy produced it.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol

from .config import Settings
from .schemas import MAX_TASK_NAME_LENGTH, Plan, PlanDay, PlanRequest

logger = logging.getLogger(__name__)

LINE_PATTERN = re.compile(r"^(?P<hh>[01]\d|2[0-3]):(?P<mm>[0-5]\d)\s*-\s*(?P<text>.+)$")
_DURATION_SUFFIX = re.compile(
    r"\(\s*(?P<n>\d+(?:\.\d+)?)\s*(?P<unit>min|mins|minutes|h|hr|hrs|hour|hours)\s*\)\s*$",
    re.I,
)
_BULLET = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+")

# (minute offset from start time, label, duration text)
TEMPLATE_BLOCKS = (
    (0, "Morning Planning", "30 min"),
    (30, None, "2 hours"),
    (150, "Break", "15 min"),
    (165, None, "1.5 hours"),
    (255, "Review & Planning", "30 min"),
)
CUSTOM_BLOCK_OFFSET = 300
TEMPLATE_MAX_HOURS = 6
DEFAULT_TASK_MINUTES = 60


class TextCompleter(Protocol):
    def complete(self, system_prompt: str, user_prompt: str) -> str: ...


class PlanStrategy(Protocol):
    name: str

    def generate(self, request: PlanRequest) -> Plan: ...


def add_minutes(hhmm: str, minutes: int) -> str:
    """Shift an ``HH:MM`` clock time, wrapping past midnight."""
    hours, mins = (int(p) for p in hhmm.split(":", 1))
    total = (hours * 60 + mins + minutes) % (24 * 60)
    return f"{total // 60:02d}:{total % 60:02d}"


def _plan_title(request: PlanRequest) -> str:
    return f"Your {request.days_to_plan}-Day Plan"


def _day_date(request: PlanRequest, index: int) -> str:
    return (request.start_date + timedelta(days=index)).isoformat()


class TemplatePlanStrategy:
    """Deterministic layout of fixed blocks; always available."""

    name = "template"

    def generate(self, request: PlanRequest) -> Plan:
        goals = request.goals
        labels = [goals[0] if goals else "Focus Work", goals[1] if len(goals) > 1 else "Learning"]

        schedule: List[PlanDay] = []
        for i in range(request.days_to_plan):
            lines = []
            goal_idx = 0
            for offset, label, duration in TEMPLATE_BLOCKS:
                if label is None:
                    label = labels[goal_idx]
                    goal_idx += 1
                lines.append(f"{add_minutes(request.start_time, offset)} - {label} ({duration})")

            if i < len(request.custom_tasks):
                custom = request.custom_tasks[i]
                lines.append(f"{add_minutes(request.start_time, CUSTOM_BLOCK_OFFSET)} - {custom} (1 hour)")

            schedule.append(
                PlanDay(
                    day=i + 1,
                    date=_day_date(request, i),
                    tasks="\n".join(lines),
                    total_hours=min(request.available_hours, TEMPLATE_MAX_HOURS),
                    task_count=len(lines),
                )
            )

        return Plan(
            title=_plan_title(request),
            description=f"A basic {request.days_to_plan}-day schedule template.",
            schedule=schedule,
        )


def fallback_plan(request: PlanRequest) -> Plan:
    """Minimal synthetic plan used when a generated one cannot be parsed."""
    label = request.goals[0] if request.goals else "Focus Work"
    hours = request.available_hours
    hours_text = f"{hours:g} hour" + ("" if hours == 1 else "s")
    schedule = [
        PlanDay(
            day=i + 1,
            date=_day_date(request, i),
            tasks=f"{request.start_time} - {label} ({hours_text})",
            total_hours=hours,
            task_count=1,
        )
        for i in range(request.days_to_plan)
    ]
    return Plan(
        title=_plan_title(request),
        description=f"A simple {request.days_to_plan}-day plan. The generated schedule could not be read.",
        schedule=schedule,
    )


# ---- normalization of externally generated plans ----

def extract_json_object(text: str) -> Dict[str, Any]:
    text = (text or "").strip()
    try:
        obj = json.loads(text)
        if isinstance(obj, dict):
            return obj
    except ValueError:
        pass

    m = re.search(r"\{.*\}", text, flags=re.S)
    if not m:
        raise ValueError("No JSON object found in model output")
    try:
        obj = json.loads(m.group(0))
    except ValueError as e:
        raise ValueError(f"Failed to parse JSON from model output: {e}")
    if not isinstance(obj, dict):
        raise ValueError("Model output JSON must be an object")
    return obj


def _task_line(item: Any) -> str:
    if isinstance(item, dict):
        when = item.get("time") or item.get("start") or item.get("startTime") or ""
        what = (
            item.get("description")
            or item.get("task")
            or item.get("name")
            or item.get("title")
            or item.get("activity")
            or ""
        )
        duration = item.get("duration")
        text = str(what).strip()
        if duration and text:
            text = f"{text} ({duration})"
        return f"{str(when).strip()} - {text}" if when else text
    return str(item)


def flatten_tasks(value: Any) -> str:
    """Coerce whatever came back for ``tasks`` into newline-joined lines."""
    if value is None:
        return ""
    if isinstance(value, str):
        raw_lines = value.replace("\r\n", "\n").split("\n")
    elif isinstance(value, list):
        raw_lines = []
        for item in value:
            raw_lines.extend(_task_line(item).split("\n"))
    elif isinstance(value, dict):
        raw_lines = [f"{k} - {v}" for k, v in value.items()]
    else:
        raw_lines = [str(value)]

    lines = []
    for line in raw_lines:
        line = _BULLET.sub("", line).strip()
        if line:
            lines.append(line)
    return "\n".join(lines)


def stamp_lines(tasks: str, start_time: str) -> str:
    """
    Give every line an ``HH:MM - `` prefix.

    Unstamped lines follow the previous line: the clock starts at
    ``start_time`` and moves on by each line's duration (one hour when the
    line names none).
    """
    clock = start_time
    out = []
    for line in tasks.split("\n"):
        m = LINE_PATTERN.match(line)
        if m:
            clock = f"{m.group('hh')}:{m.group('mm')}"
            text = m.group("text")
        else:
            text = line
            line = f"{clock} - {text}"
        out.append(line)
        clock = add_minutes(clock, parse_duration_minutes(text) or DEFAULT_TASK_MINUTES)
    return "\n".join(out)


def _valid_iso_date(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    try:
        return date.fromisoformat(value.strip()[:10]).isoformat()
    except ValueError:
        return None


def normalize_plan(obj: Dict[str, Any], request: PlanRequest) -> Plan:
    schedule_in = obj.get("schedule")
    if not isinstance(schedule_in, list):
        raise ValueError("schedule must be a list")

    schedule: List[PlanDay] = []
    for i, entry in enumerate(schedule_in):
        if not isinstance(entry, dict):
            continue
        tasks = flatten_tasks(entry.get("tasks"))
        if not tasks:
            continue
        tasks = stamp_lines(tasks, request.start_time)

        day = entry.get("day")
        if not isinstance(day, int) or isinstance(day, bool) or not 1 <= day <= request.days_to_plan:
            day = i + 1

        total = entry.get("totalHours")
        if not isinstance(total, (int, float)) or isinstance(total, bool) or total < 0:
            total = request.available_hours

        schedule.append(
            PlanDay(
                day=day,
                date=_valid_iso_date(entry.get("date")) or _day_date(request, day - 1),
                tasks=tasks,
                total_hours=total,
                task_count=len(tasks.split("\n")),
            )
        )

    if not schedule:
        raise ValueError("schedule has no usable days")

    return Plan(
        title=str(obj.get("title") or _plan_title(request)),
        description=str(obj.get("description") or f"A {request.days_to_plan}-day schedule."),
        schedule=schedule,
    )


SYSTEM_PROMPT = (
    "You are a study and work schedule planner. Reply with a single JSON object only, "
    'shaped as {"title": str, "description": str, "schedule": [{"day": int, "date": "YYYY-MM-DD", '
    '"tasks": str, "totalHours": number, "taskCount": int}]}. '
    '"tasks" must be ONE string with one "HH:MM - description (duration)" entry per line.'
)


def build_prompt(request: PlanRequest) -> str:
    lines = [
        f"Create a {request.days_to_plan}-day schedule starting on {request.start_date.isoformat()}.",
        f"Available time per day: {request.available_hours:g} hours, starting at {request.start_time}.",
        f"Goals: {', '.join(request.goals) if request.goals else 'none given'}.",
    ]
    if request.custom_tasks:
        lines.append(f"Also schedule these tasks: {'; '.join(request.custom_tasks)}.")
    if request.deadline:
        lines.append(f"Everything should be finished by {request.deadline.isoformat()}.")
    if request.active_tasks:
        lines.append(f"The user already has {request.active_tasks} active tasks.")
    lines.append("Include short breaks. Do not exceed the available hours on any day.")
    return "\n".join(lines)


class LLMPlanStrategy:
    """Asks an external text-completion service for a plan and repairs its shape."""

    name = "llm"

    def __init__(self, llm: TextCompleter) -> None:
        self.llm = llm

    def generate(self, request: PlanRequest) -> Plan:
        try:
            raw = self.llm.complete(SYSTEM_PROMPT, build_prompt(request))
        except Exception:
            logger.exception("Plan generation request failed; using fallback plan")
            return fallback_plan(request)

        try:
            return normalize_plan(extract_json_object(raw), request)
        except (ValueError, OverflowError) as e:
            logger.warning("Generated plan could not be parsed (%s); using fallback plan", e)
            return fallback_plan(request)


def select_strategy(settings: Settings, llm: Optional[TextCompleter] = None) -> PlanStrategy:
    if settings.plan_strategy == "llm":
        if llm is not None:
            return LLMPlanStrategy(llm)
        if settings.llm_api_key:
            from .llm import LLMClient

            return LLMPlanStrategy(LLMClient.from_settings(settings))
        logger.warning("plan_strategy=llm but no LLM API key is configured; using template plans")
    return TemplatePlanStrategy()


# ---- plan -> tasks ----

def parse_duration_minutes(text: str) -> Optional[int]:
    m = _DURATION_SUFFIX.search(text or "")
    if not m:
        return None
    n = float(m.group("n"))
    unit = m.group("unit").lower()
    minutes = n if unit.startswith("m") else n * 60
    return max(1, int(round(minutes)))


def plan_to_tasks(plan: Plan) -> List[Dict[str, Any]]:
    """Explode a plan into task-create payloads, one per schedule line."""
    out: List[Dict[str, Any]] = []
    for day in plan.schedule:
        try:
            day_date = date.fromisoformat(day.date)
        except ValueError:
            logger.warning("Skipping plan day %s with bad date %r", day.day, day.date)
            continue

        for line in day.tasks.split("\n"):
            m = LINE_PATTERN.match(line.strip())
            if not m:
                continue
            text = m.group("text").strip()
            minutes = parse_duration_minutes(text)
            name = _DURATION_SUFFIX.sub("", text).strip() or text
            when = datetime(day_date.year, day_date.month, day_date.day, int(m.group("hh")), int(m.group("mm")))
            out.append(
                {
                    "taskName": name[:MAX_TASK_NAME_LENGTH],
                    "duration": minutes or DEFAULT_TASK_MINUTES,
                    "priority": "Medium",
                    "category": "Plan",
                    "notes": f"Day {day.day} of {plan.title}",
                    "date": when.isoformat(),
                }
            )
    return out
