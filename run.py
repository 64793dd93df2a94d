import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

import uvicorn

from tardy_scanner.admin_service import EnrollmentSession
from tardy_scanner.config import GENDERS, ROLE_TEACHER, ROLES, get_settings
from tardy_scanner.context import ServiceContext
from tardy_scanner.exceptions import TrackerError
from tardy_scanner.logger import setup_logger
from tardy_scanner.recognition import RecognitionSnapshot
from tardy_scanner.reports import incidents_excel, incidents_to_csv, sort_history
from tardy_scanner.scanner import ScannerSession
from tardy_scanner.types import Operator


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Face-recognition tardy and period-leave tracker"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    web = subparsers.add_parser("web", help="Launch the HTTP API and websocket event feed")
    web.add_argument("--host", default="0.0.0.0", help="Host interface")
    web.add_argument("--port", type=int, default=8000, help="Port")

    scan = subparsers.add_parser("scan", help="Run the scanner in the terminal and print recognitions")
    scan.add_argument("--camera", type=int, default=None, help="Camera index override")
    scan.add_argument("--seconds", type=int, default=0, help="Stop after N seconds (0 = until Ctrl+C)")

    enroll = subparsers.add_parser("enroll", help="Scan a face from the webcam and save the student")
    enroll.add_argument("--name", required=True, help="Student name")
    enroll.add_argument("--class", required=True, dest="class_name", help="Student class")
    enroll.add_argument("--gender", default="L", choices=GENDERS, help="Student gender")
    enroll.add_argument("--id", default=None, dest="student_id", help="Existing student ID to re-enroll")
    enroll.add_argument("--camera", type=int, default=None, help="Camera index override")

    list_cmd = subparsers.add_parser("list-students", help="List students in the roster")
    list_cmd.add_argument("--limit", type=int, default=100, help="Max rows to print")

    export = subparsers.add_parser("export-incidents", help="Export the incident log to CSV or Excel")
    export.add_argument("--output", type=Path, required=True, help="Output file (.csv or .xlsx)")

    operator = subparsers.add_parser("create-operator", help="Create a teacher or admin sign-in")
    operator.add_argument("--email", required=True, help="Operator email")
    operator.add_argument("--password", required=True, help="Operator password")
    operator.add_argument("--role", default=ROLE_TEACHER, choices=ROLES, help="Operator role")

    return parser


def _settings_for(args: argparse.Namespace):
    settings = get_settings()
    camera = getattr(args, "camera", None)
    if camera is not None:
        settings = settings.model_copy(update={"camera_index": camera})
    return settings


async def _scan(context: ServiceContext, seconds: int) -> None:
    await context.init()

    def _print(snapshot: RecognitionSnapshot) -> None:
        print(f"[{snapshot.state.value}] {snapshot.status_message}")

    def _identity(operator: Optional[Operator]) -> None:
        if operator is not None:
            print(f"Operator: {operator.display_email} ({operator.role})")

    remove_identity = context.auth.on_identity_change(_identity)
    await context.station_operator()
    try:
        async with ScannerSession(context) as session:
            session.recognition.subscribe(_print)
            if seconds > 0:
                await asyncio.sleep(seconds)
            else:
                await asyncio.Event().wait()
    finally:
        remove_identity()
        context.auth.sign_out()


async def _enroll(context: ServiceContext, args: argparse.Namespace) -> str:
    await context.init()
    await context.vision.ensure_loaded()
    async with EnrollmentSession(context.camera_factory(), context.student_admin) as session:
        descriptor = await session.capture_descriptor()
    return await context.student_admin.save_student(
        name=args.name,
        class_name=args.class_name,
        gender=args.gender,
        descriptor=descriptor,
        student_id=args.student_id,
    )


async def _export(context: ServiceContext, output: Path) -> int:
    docs = sort_history(await context.incident_documents())
    output.parent.mkdir(parents=True, exist_ok=True)
    if output.suffix.lower() == ".xlsx":
        output.write_bytes(incidents_excel(docs))
    else:
        output.write_text(incidents_to_csv(docs), encoding="utf-8")
    return len(docs)


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = setup_logger("main")

    try:
        if args.command == "web":
            from tardy_scanner.web_app import create_web_app

            app = create_web_app(settings=_settings_for(args))
            uvicorn.run(app, host=args.host, port=args.port, log_level="info")
            return 0

        context = ServiceContext.from_settings(_settings_for(args))
        try:
            if args.command == "scan":
                asyncio.run(_scan(context, args.seconds))
                print("Scanner stopped.")
                return 0

            if args.command == "enroll":
                student_id = asyncio.run(_enroll(context, args))
                print(f"Enrollment successful for {args.name} ({student_id}).")
                return 0

            if args.command == "list-students":
                students = asyncio.run(context.student_admin.list_students())
                if not students:
                    print("No students enrolled.")
                    return 0

                print(f"{'Student ID':<22} {'Class':<10} {'G':<2} {'Face':<5} {'Name'}")
                print("-" * 72)
                for student in students[: args.limit]:
                    face = "yes" if student.enrolled else "no"
                    print(f"{student.id:<22} {student.class_name:<10} {student.gender:<2} {face:<5} {student.name}")
                return 0

            if args.command == "export-incidents":
                count = asyncio.run(_export(context, args.output))
                print(f"Exported {count} incidents to {args.output}")
                return 0

            if args.command == "create-operator":
                operator = asyncio.run(context.auth.register_operator(args.email, args.password, role=args.role))
                print(f"Created {operator.role} {operator.email} ({operator.uid}).")
                return 0
        finally:
            context.close()

    except TrackerError as exc:
        logger.error("Application error: %s", exc)
        print(f"Error: {exc}")
        return 1
    except KeyboardInterrupt:
        print("\nStopped by user.")
        return 1
    except Exception as exc:
        logger.exception("Unexpected failure")
        print(f"Unexpected error: {exc}")
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
