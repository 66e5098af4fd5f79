#!/usr/bin/env python3
"""
Donor Campaign Engine
=====================

Usage:
    python main.py run                                   # send executor loop
    python main.py --org ORG create "thank spring donors" --donors 1,2,3 [--launch]
    python main.py --org ORG generate <session_id>
    python main.py --org ORG retry <session_id>
    python main.py --org ORG regenerate <session_id> [--instruction "invite donors to the gala"]
    python main.py --org ORG update <session_id> [--name N] [--instruction I] [--donors 1,2]
    python main.py --org ORG review approve <email_id> [<email_id> ...]
    python main.py --org ORG review reject <email_id> ... --reason "tone"
    python main.py --org ORG schedule <session_id> [--send-type unsent]
    python main.py --org ORG pause|resume|cancel <session_id>
    python main.py --org ORG status <session_id>
    python main.py --org ORG list [--status READY_TO_SEND]
    python main.py --org ORG delete <session_id>
    python main.py --org ORG recover [--stale-minutes 60]
    python main.py --org ORG config show
    python main.py --org ORG config update '{"daily_limit": 100}' [--reschedule-existing]
"""

import argparse
import asyncio
import json
import logging
import sys

import config
from campaign_engine.errors import CampaignError
from campaign_engine.runner import CampaignRunner, build_engine
from utils.logging_utils import setup_logging

logger = logging.getLogger("campaigns.cli")


def _print_json(data):
    print(json.dumps(data, indent=2, default=str))


def _parse_donor_ids(value: str):
    ids = [v.strip() for v in value.split(",") if v.strip()]
    return [int(v) if v.isdigit() else v for v in ids]


def run_executor():
    runner = CampaignRunner(build_engine())
    asyncio.run(runner.start())


def show_status(engine, org: str, session_id: str):
    status = engine.campaigns.get_session_status(org, session_id)
    print(f"\n📊 Campaign {session_id}")
    print(f"   Status: {status['status']}{' (generating)' if status['generation_running'] else ''}")
    print(f"   Donors: {status['completed_donors']}/{status['total_donors']} generated, "
          f"{status['failed_donors']} failed")
    print(f"   Review: {status['pending_approval']} pending, {status['approved']} approved")
    jobs = status["jobs"]
    print(f"   Jobs:   {jobs['scheduled']} scheduled, {jobs['paused']} paused, {jobs['sent']} sent, "
          f"{jobs['failed']} failed, {jobs['cancelled']} cancelled")
    if status["error_message"]:
        print(f"   ⚠️  {status['error_message']}")


def list_campaigns(engine, org: str, status: str = None, limit: int = 10, offset: int = 0):
    result = engine.campaigns.list_campaigns(org, limit=limit, offset=offset, status=status)
    print(f"\n📋 Campaigns ({result['total_count']} total)\n")
    for c in result["campaigns"]:
        print(f"   {c['id']}  {c['status']:<14} {c['sent_emails']:>4}/{c['total_emails']:<4} sent  "
              f"{c['failed_donors']} donors / {c['failed_jobs']} sends failed  {c['job_name']}")


def main():
    parser = argparse.ArgumentParser(
        description="Bulk donor email campaigns: generate, review, schedule, send",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--org", help="Organization id")
    parser.add_argument("--user", default="cli", help="Acting user id")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("run", help="Run the send executor until SIGTERM/SIGINT")

    create_parser = subparsers.add_parser("create", help="Create a campaign session")
    create_parser.add_argument("instruction", help="What the emails should say")
    create_parser.add_argument("--donors", required=True, help="Comma-separated donor ids")
    create_parser.add_argument("--name", help="Campaign name")
    create_parser.add_argument("--launch", action="store_true", help="Create as PENDING and generate now")

    for name, help_text in (("generate", "Generate emails for a session"),
                            ("retry", "Retry generation for donors without an email"),
                            ("pause", "Pause scheduled sends"),
                            ("resume", "Resume paused sends"),
                            ("cancel", "Cancel outstanding sends"),
                            ("status", "Show campaign status"),
                            ("schedule-show", "Show the send schedule of a campaign"),
                            ("delete", "Delete a campaign and its emails")):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("session_id", help="Campaign session id")

    regenerate_parser = subparsers.add_parser("regenerate", help="Regenerate every email of a campaign")
    regenerate_parser.add_argument("session_id", help="Campaign session id")
    regenerate_parser.add_argument("--instruction", help="New instruction for the emails")

    edit_parser = subparsers.add_parser("update", help="Edit a DRAFT campaign")
    edit_parser.add_argument("session_id", help="Campaign session id")
    edit_parser.add_argument("--name", help="Campaign name")
    edit_parser.add_argument("--instruction", help="What the emails should say")
    edit_parser.add_argument("--donors", help="Comma-separated donor ids")

    recover_parser = subparsers.add_parser("recover", help="Release generation batches left running by a dead process")
    recover_parser.add_argument("--stale-minutes", type=int, default=None)

    review_parser = subparsers.add_parser("review", help="Approve or reject emails")
    review_parser.add_argument("action", choices=["approve", "reject"])
    review_parser.add_argument("email_ids", nargs="+")
    review_parser.add_argument("--reason", help="Reject reason")

    schedule_parser = subparsers.add_parser("schedule", help="Schedule approved emails for sending")
    schedule_parser.add_argument("session_id", help="Campaign session id")
    schedule_parser.add_argument("--send-type", choices=["all", "unsent"], default="all")

    list_parser = subparsers.add_parser("list", help="List campaigns")
    list_parser.add_argument("--status", help="Filter by status")
    list_parser.add_argument("--limit", type=int, default=10)
    list_parser.add_argument("--offset", type=int, default=0)

    config_parser = subparsers.add_parser("config", help="Show or update the sending schedule config")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("show", help="Show the effective config")
    update_parser = config_sub.add_parser("update", help="Apply a JSON patch")
    update_parser.add_argument("patch", help='JSON object, e.g. \'{"daily_limit": 100}\'')
    update_parser.add_argument("--reschedule-existing", action="store_true",
                               help="Move already scheduled jobs to fit the new config")

    args = parser.parse_args()
    setup_logging(config.LOG_LEVEL, config.LOG_FILE or None, structured=config.LOG_FORMAT == "json")

    if args.command is None:
        parser.print_help()
        return
    if args.command == "run":
        run_executor()
        return
    if not args.org:
        parser.error("--org is required for this command")

    engine = build_engine()
    org = args.org
    try:
        if args.command == "create":
            session = engine.campaigns.create_session(
                org, args.user, args.instruction, _parse_donor_ids(args.donors),
                job_name=args.name, launch=args.launch,
            )
            print(f"\n✅ Campaign created: {session['id']} ({session['status']})")
            if args.launch:
                session = asyncio.run(engine.campaigns.generate_emails(org, session["id"]))
                show_status(engine, org, session["id"])
        elif args.command == "generate":
            asyncio.run(engine.campaigns.generate_emails(org, args.session_id))
            show_status(engine, org, args.session_id)
        elif args.command == "retry":
            asyncio.run(engine.campaigns.retry_campaign(org, args.session_id))
            show_status(engine, org, args.session_id)
        elif args.command == "regenerate":
            asyncio.run(engine.campaigns.regenerate_all_emails(org, args.session_id, instruction=args.instruction))
            show_status(engine, org, args.session_id)
        elif args.command == "update":
            session = engine.campaigns.update_campaign(
                org, args.session_id, job_name=args.name, instruction=args.instruction,
                donor_ids=_parse_donor_ids(args.donors) if args.donors else None,
            )
            print(f"✅ Campaign updated: {session['id']} ({session['total_donors']} donors)")
        elif args.command == "recover":
            count = engine.campaigns.recover_stuck_sessions(org, stale_minutes=args.stale_minutes)
            print(f"🔧 Recovered {count} stuck campaigns")
        elif args.command == "review":
            count = engine.review.bulk_review(org, args.email_ids, args.action, args.reason)
            print(f"✅ {args.action}: {count} of {len(args.email_ids)} emails updated")
        elif args.command == "schedule":
            _print_json(engine.scheduler.schedule_session(org, args.session_id, args.send_type))
        elif args.command == "pause":
            print(f"⏸️  Paused {engine.scheduler.pause(org, args.session_id)} jobs")
        elif args.command == "resume":
            print(f"▶️  Resumed {engine.scheduler.resume(org, args.session_id)} jobs")
        elif args.command == "cancel":
            print(f"🛑 Cancelled {engine.scheduler.cancel(org, args.session_id)} jobs")
        elif args.command == "status":
            show_status(engine, org, args.session_id)
        elif args.command == "schedule-show":
            schedule = engine.scheduler.get_campaign_schedule(org, args.session_id)
            _print_json({k: v for k, v in schedule.items() if k != "jobs"})
        elif args.command == "list":
            list_campaigns(engine, org, args.status, args.limit, args.offset)
        elif args.command == "delete":
            engine.campaigns.delete_campaign(org, args.session_id)
            print(f"🗑️  Deleted campaign {args.session_id}")
        elif args.command == "config":
            if args.config_command == "update":
                _print_json(engine.scheduler.update_schedule_config(
                    org, json.loads(args.patch), reschedule_existing=args.reschedule_existing))
            else:
                _print_json(engine.config_store.get(org).to_dict())
    except CampaignError as e:
        logger.error(f"{e.__class__.__name__}: {e}")
        print(f"❌ {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
