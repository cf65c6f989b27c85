#!/usr/bin/env python3
"""
GitLab MR AI Reviewer CLI
Poll loop, webhook server, provider check and usage statistics
"""
import asyncio
import argparse
import json
import logging
import signal
import sys
from pathlib import Path

from config.settings import settings
from core.exceptions import PersistenceError, ProviderUnavailable
from core.gitlab_client import GitLabClient
from core.llm_provider import create_provider
from core.processing import ProcessingController
from core.reviewer import MergeRequestReviewer
from core.scheduler import PollScheduler
from core.usage_logger import UsageLedger, UsageLogEntry

logger = logging.getLogger(__name__)

RULE = "═" * 80


def parse_args(argv=None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="GitLab MR AI Reviewer - LLM code review for merge requests",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s poll
  %(prog)s server --port 3000
  %(prog)s check
  %(prog)s stats --daily
  %(prog)s stats --month 2026-01
  %(prog)s stats --recent 20
  %(prog)s stats --export data/usage-export.csv
        """
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    subparsers.add_parser('poll', help='Review open MRs on a fixed interval')

    server_parser = subparsers.add_parser('server', help='Start the webhook server')
    server_parser.add_argument('--host', default=settings.webhook_host, help='Bind address')
    server_parser.add_argument('--port', type=int, default=settings.webhook_port, help='Bind port')

    subparsers.add_parser('check', help='Check that the configured LLM is available')

    stats_parser = subparsers.add_parser('stats', help='Show usage statistics')
    stats_parser.add_argument('--daily', '-d', action='store_true', help='Include the daily breakdown')
    stats_parser.add_argument('--month', metavar='YYYY-MM', help='Entries of one month')
    stats_parser.add_argument('--day', metavar='YYYY-MM-DD', help='Entries of one day')
    stats_parser.add_argument('--recent', '-r', type=int, metavar='N', help='Last N entries')
    stats_parser.add_argument('--export', '-e', metavar='PATH', help='Write all entries as CSV')
    stats_parser.add_argument('--json', '-j', action='store_true', help='Print the raw all-time log')

    return parser.parse_args(argv)


def setup_logging():
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def build_reviewer() -> MergeRequestReviewer:
    """Wire the pipeline from settings"""
    return MergeRequestReviewer(
        gitlab_client=GitLabClient(settings.gitlab_url, settings.gitlab_token),
        provider=create_provider(settings),
        ledger=UsageLedger(settings.usage_log_dir),
        controller=ProcessingController(),
        project_id=settings.gitlab_project_id,
        model=settings.llm_model,
        ai_review_label=settings.ai_review_label,
        exclude_branches=settings.excluded_branches,
        exclude_patterns=settings.excluded_branch_patterns,
        system_prompt_path=settings.system_prompt_path,
    )


async def cmd_poll(args):
    """Run the poll scheduler until SIGINT/SIGTERM"""
    settings.validate_required()
    scheduler = PollScheduler(build_reviewer(), settings.check_interval_seconds)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, scheduler.stop)

    try:
        await scheduler.start()
    except ProviderUnavailable as e:
        logger.error(f"❌ {e}")
        sys.exit(1)


async def cmd_check(args):
    """Probe the configured provider"""
    settings.validate_required()
    reviewer = build_reviewer()
    if await reviewer.check_availability():
        print(f"✅ {reviewer.provider.display_name} model {reviewer.model} is available")
    else:
        print(f"❌ {reviewer.provider.display_name} model {reviewer.model} is not available")
        sys.exit(1)


def cmd_server(args):
    """Serve the webhook API"""
    import uvicorn
    from api.main import create_app

    settings.validate_required()

    # Probe with a throwaway instance, clients must not outlive their event loop
    if not asyncio.run(build_reviewer().check_availability()):
        logger.error(f"❌ {settings.llm_provider} model {settings.llm_model} is not available")
        sys.exit(1)

    app = create_app(build_reviewer(), settings.gitlab_project_id, settings.webhook_secret)

    print("🌐 Webhook server starting")
    print(f"   Address: http://{args.host}:{args.port}")
    print(f"   Webhook URL: http://<your-domain>:{args.port}/webhook/gitlab")
    print(f"   Health check: http://{args.host}:{args.port}/health")

    uvicorn.run(app, host=args.host, port=args.port, log_level=settings.log_level.lower())


def print_entry(entry: UsageLogEntry, with_date: bool = True):
    status = "✅" if entry.status == "success" else "❌"
    when = f"{entry.date} ({entry.day_of_week}) {entry.time}" if with_date else entry.time
    print(f"\n{status} {when}")
    print(f"   📝 MR !{entry.mr_iid}: {entry.mr_title}")
    print(f"   🔗 {entry.mr_url}")
    print(f"   🤖 {entry.provider}/{entry.model}")
    print(f"   📊 Prompt: {entry.prompt_tokens:,} | Completion: {entry.completion_tokens:,}"
          f" | Total: {entry.total_tokens:,} tokens")
    print(f"   💰 Estimated cost: ${entry.estimated_cost_usd:.4f} (₩{entry.estimated_cost_krw:,})")
    if entry.diff_info:
        print(f"   📁 Files: {entry.diff_info.file_count} | {entry.diff_info.total_size_bytes / 1024:.1f}KB")
    if entry.error_message:
        print(f"   ⚠️ Error: {entry.error_message}")


def print_entries(title: str, entries, with_date: bool = True):
    if not entries:
        print(f"\n📊 No usage recorded for {title}.")
        return

    print("\n" + RULE)
    print(f"📋 {title}")
    print(RULE)
    for entry in entries:
        print_entry(entry, with_date)

    total_tokens = sum(e.total_tokens for e in entries)
    total_krw = sum(e.estimated_cost_krw for e in entries)
    print("\n" + RULE)
    print(f"📊 {len(entries)} review(s), {total_tokens:,} tokens, ₩{total_krw:,}")
    print(RULE + "\n")


def print_monthly_statistics(ledger: UsageLedger, daily: bool):
    months = ledger.get_monthly_statistics()
    if not months:
        print("\n📊 No usage recorded yet.")
        return

    print("\n" + RULE)
    print("📊 AI code review usage by month")
    print(RULE)
    for stats in months:
        print(f"\n📅 {stats.month}")
        print(f"   Reviews: {stats.requests} (✅ {stats.success_count} / ❌ {stats.failed_count})")
        print(f"   Tokens: {stats.total_tokens:,} (avg {stats.avg_tokens_per_request:,}/review)")
        print(f"   Estimated cost: ${stats.cost_usd:.4f} (₩{stats.cost_krw:,})")
        if daily:
            for date in sorted(stats.daily_breakdown):
                bucket = stats.daily_breakdown[date]
                print(f"     {date}: {bucket.requests} review(s), {bucket.tokens:,} tokens, ₩{bucket.cost_krw:,}")

    overall = ledger.get_usage_statistics()
    print("\n" + RULE)
    print(f"Total: {overall.total_requests} review(s), {overall.total_tokens:,} tokens,"
          f" ${overall.total_cost_usd:.4f} (₩{overall.total_cost_krw:,})")
    for key, bucket in sorted(overall.model_stats.items()):
        print(f"   {key}: {bucket.requests} review(s), {bucket.tokens:,} tokens")
    print(RULE + "\n")


def cmd_stats(args):
    """Print usage statistics from the ledger"""
    ledger = UsageLedger(settings.usage_log_dir)

    try:
        if args.json:
            print(json.dumps(ledger.load_usage_log().to_dict(), indent=2, ensure_ascii=False))
        elif args.export:
            export_path = Path(args.export)
            export_path.parent.mkdir(parents=True, exist_ok=True)
            export_path.write_text(ledger.export_csv(), encoding="utf-8")
            print(f"✅ CSV written to {export_path}")
        elif args.recent is not None:
            print_entries(f"Last {args.recent} AI code review(s)", ledger.get_recent_entries(args.recent))
        elif args.day:
            print_entries(f"{args.day}", ledger.load_daily_log(args.day).entries, with_date=False)
        elif args.month:
            print_entries(f"{args.month}", ledger.load_monthly_log(args.month).entries)
        else:
            print_monthly_statistics(ledger, args.daily)
    except PersistenceError as e:
        print(f"❌ {e}", file=sys.stderr)
        sys.exit(1)


def main(argv=None):
    """Entry point"""
    args = parse_args(argv)
    setup_logging()

    if not args.command:
        print("Please specify a command. Use --help for usage.")
        sys.exit(1)

    if args.command == 'poll':
        asyncio.run(cmd_poll(args))
    elif args.command == 'server':
        cmd_server(args)
    elif args.command == 'check':
        asyncio.run(cmd_check(args))
    elif args.command == 'stats':
        cmd_stats(args)


if __name__ == '__main__':
    try:
        main()
    except KeyboardInterrupt:
        print("\nCancelled")
        sys.exit(0)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)
