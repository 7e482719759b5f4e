import argparse
import csv
import logging
import os
import sys
import uuid

from academy_scheduler.config import DEFAULT_CONFIG
from academy_scheduler.data_store import SheetsDataStore, load_config_overrides
from academy_scheduler.errors import SchedulerError
from academy_scheduler.model import PRIORITIES, REQUEST_TYPES, SchedulingRequest
from academy_scheduler.scheduler import SchedulingService
from academy_scheduler.timegrid import DAY_NAMES

logger = logging.getLogger("academy_scheduler")


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Schedule a group of students into a course.")
    p.add_argument("--course", required=True, help="Course id")
    p.add_argument("--students", nargs="+", required=True, help="Student ids")
    p.add_argument("--type", default="auto_schedule", choices=REQUEST_TYPES)
    p.add_argument("--priority", default="medium", choices=PRIORITIES)
    p.add_argument("--spreadsheet", default=os.environ.get("ACADEMY_SPREADSHEET", "ACADEMY_SCHEDULING"))
    p.add_argument("--credentials", default=os.environ.get("ACADEMY_CREDENTIALS_FILE", "credentials.json"))
    p.add_argument("--out", default="scheduled_classes.csv", help="CSV output file")
    p.add_argument("--commit", action="store_true", help="Write the scheduled classes back to the spreadsheet")
    p.add_argument("-v", "--verbose", action="store_true")
    return p.parse_args(argv)


def export_csv(result, path: str):
    with open(path, 'w', newline='', encoding='utf-8') as f:
        writer = csv.writer(f)
        writer.writerow(['Class', 'Course', 'Day', 'Start', 'End', 'Teacher', 'Students', 'Location', 'Confidence'])
        for c in sorted(result.scheduled_classes, key=lambda c: (c.time_slot.key, c.id)):
            writer.writerow([
                c.id,
                c.course_id,
                DAY_NAMES[c.time_slot.day_of_week],
                c.time_slot.start_time,
                c.time_slot.end_time,
                c.teacher_id or 'TBD',
                ' '.join(c.student_ids),
                c.time_slot.location or '',
                f"{c.confidence_score:.2f}",
            ])


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    logger.info("Connecting to spreadsheet '%s'", args.spreadsheet)
    try:
        store = SheetsDataStore(args.spreadsheet, args.credentials).load()
        overrides = load_config_overrides(args.spreadsheet, args.credentials)
        config = DEFAULT_CONFIG.merged(overrides) if overrides else DEFAULT_CONFIG
        service = SchedulingService(store, config)

        request = SchedulingRequest(
            id=str(uuid.uuid4()),
            course_id=args.course,
            student_ids=tuple(args.students),
            type=args.type,
            priority=args.priority,
        )
        result = service.schedule(request)
    except SchedulerError as e:
        logger.error("[%s] %s", e.category, e.message)
        return 1

    for conflict in result.unresolved_conflicts[:20]:
        logger.warning("Unresolved %s: %s", conflict.type, conflict.description)
    for rec in result.recommendations:
        logger.info("Recommendation (%s, %.2f): %s", rec.priority, rec.confidence_score, rec.description)

    if not result.success:
        logger.error("Scheduling failed: %s", result.error.message if result.error else 'unknown error')
        return 2

    export_csv(result, args.out)
    logger.info("Exported %d classes to %s", len(result.scheduled_classes), args.out)

    if args.commit:
        report = service.commit(result)
        logger.info("Committed %d classes (%d retried)", len(report.committed), len(report.retried))
        for conflict in report.unresolved_conflicts:
            logger.error("Not committed: %s", conflict.description)
        if report.unresolved_conflicts:
            return 3
    return 0


if __name__ == "__main__":
    sys.exit(main())
