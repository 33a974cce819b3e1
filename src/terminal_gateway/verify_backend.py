"""
Smoke check against a running backend: start a session for a course,
scan a card twice and an unknown card, stop the session and scan again.

    python -m terminal_gateway.verify_backend --staff SMAF/0001 --course CS101 --tag AB12CD
"""

import argparse
import asyncio

from .backend_client import AttendanceClient


async def main(args):
    client = AttendanceClient(args.backend)

    print("\nChecking backend health...")
    health = await client.health_check()
    print(f"Backend Status: {health}")

    if health.get('status') != 'online':
        print("Backend is offline. Please start attendance_backend.main first.")
        await client.close()
        return

    try:
        staff = await client.find_staff(args.staff)
        if not staff.get('success'):
            print(f"Staff {args.staff} not found: {staff.get('message')}")
            return
        lecturer = staff['lecturer']

        courses = (await client.list_lecturer_courses(lecturer['id'])).get('courses', [])
        course = next((c for c in courses if c['code'] == args.course), None)
        if course is None:
            print(f"{args.staff} does not own {args.course}")
            return

        started = await client.start_session(course['id'], lecturer['id'])
        if not started.get('success'):
            print(f"Could not start session: {started.get('message')}")
            return
        session_id = started['session']['id']
        print(f"\nSession {session_id} started for {args.course}")

        for tag in (args.tag, args.tag, args.unknown_tag):
            result = await client.submit_scan(session_id, rfid_tag=tag)
            print(f"  > Scan {tag}: {result['result']} - {result.get('message')}")

        await client.stop_session(session_id)
        print(f"\nSession {session_id} stopped")

        result = await client.submit_scan(session_id, rfid_tag=args.tag)
        print(f"  > Scan {args.tag}: {result['result']} - {result.get('message')}")

        logs = await client.get_session_logs(session_id)
        print(f"\nLogs for session {session_id}: {logs.get('count', 0)}")
        for log in logs.get('logs', []):
            student = log.get('student') or {}
            print(f"  - {log['timestamp']} {student.get('student_id')} {log['status']}")
    finally:
        await client.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run a scan scenario against the attendance backend")
    parser.add_argument("--backend", default="http://localhost:8000")
    parser.add_argument("--staff", default="SMAF/0001")
    parser.add_argument("--course", default="CS101")
    parser.add_argument("--tag", default="AB12CD")
    parser.add_argument("--unknown-tag", default="ZZ99")
    asyncio.run(main(parser.parse_args()))
