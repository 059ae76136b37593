"""
craftlocal-fraud command line.

Usage:
    craftlocal-fraud db init [--force]          # Create database, apply migrations
    craftlocal-fraud db migrate [--dry-run]     # Apply pending migrations
    craftlocal-fraud db verify                  # Schema + integrity check
    craftlocal-fraud db stats                   # Table/row statistics
    craftlocal-fraud db backup [--keep N]       # Manual backup, prune old ones

    craftlocal-fraud analyze --user U --amount 120 --listing L --seller S \\
        [--fingerprint fp.json] [--events events.json] [--json]
    craftlocal-fraud signals --user U
    craftlocal-fraud trust --user U [--verification phone] [--recalculate]
    craftlocal-fraud order add --buyer U --seller S --amount 40
    craftlocal-fraud order status ORDER_ID delivered
    craftlocal-fraud review SIGNAL_ID --reviewer ADMIN (--approve | --reject)
    craftlocal-fraud false-positive SIGNAL_ID
    craftlocal-fraud dashboard [--range 24h|7d|30d]
    craftlocal-fraud rules list | enable NAME | disable NAME

Exit Codes:
    0 = success (analyze: approve)
    1 = error
    2 = analyze: review
    3 = analyze: block
"""
import argparse
import json
import logging
import sys
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import DEFAULT_TIME_RANGE, TIME_RANGES_HOURS, load_settings
from .db import (
    DB_PATH,
    apply_migrations,
    backup_database,
    cleanup_old_backups,
    get_database_stats,
    initialize_database,
    integrity_check,
    open_connection,
    verify_schema,
)
from .domain.fingerprint import fingerprint_from_dict
from .domain.models import (
    Order,
    OrderStatus,
    Recommendation,
    VerificationLevel,
    utc_now,
)
from .domain.validation import require, validate_amount, validate_identifier
from .engine import FraudDetectionEngine
from .repositories import OrdersRepository, RepositoryError, RulesRepository
from .utils.error_formatting import format_error
from .utils.logging_config import get_logger, setup_logging
from .workflows.admin_review import AdminReviewWorkflow
from .workflows.transaction_review import TransactionReviewWorkflow
from .workflows.trust_scores import TrustScoreWorkflow

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
RECOMMENDATION_EXIT_CODES = {
    Recommendation.APPROVE: 0,
    Recommendation.REVIEW: 2,
    Recommendation.BLOCK: 3,
}


def _load_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def replay_events(engine: FraudDetectionEngine, events: List[Dict[str, Any]]) -> None:
    """
    Feed recorded client events into the engine's tracker.

    Each event: {"type": "mousemove"|"click"|"scroll"|"keydown", "t": ms since
    session start, ...}; the session is back-dated so that it ends now.
    """
    tracker = engine.tracker
    start_ms = tracker.start_ms
    for event in events:
        ts = start_ms + float(event.get("t", 0))
        kind = event.get("type")
        if kind == "mousemove":
            tracker.record_mouse_move(event.get("x", 0), event.get("y", 0), ts)
        elif kind == "click":
            tracker.record_click(event.get("x", 0), event.get("y", 0), ts, event.get("element", "unknown"))
        elif kind == "scroll":
            tracker.record_scroll(event.get("scroll_y", 0), ts)
        elif kind == "keydown":
            tracker.record_keydown(str(event.get("key", "")), ts)
        else:
            logger.warning("Ignoring unknown event type: %s", kind)


# ============================================================
# db
# ============================================================

def cmd_db(args) -> int:
    db_path = Path(args.db) if args.db else DB_PATH

    if args.db_command == "init":
        conn = initialize_database(db_path, force=args.force)
        print(f"✓ Database ready: {db_path}")
        conn.close()
        return EXIT_OK

    if not db_path.exists():
        print(f"❌ Database not found: {db_path}")
        print("   Run: craftlocal-fraud db init")
        return EXIT_ERROR

    if args.db_command == "backup":
        backup_dir = db_path.parent / "backups"
        backup_path = backup_database(db_path, backup_reason="manual", backup_dir=backup_dir)
        print(f"✓ Backup created: {backup_path}")
        removed = cleanup_old_backups(max_backups=args.keep, backup_dir=backup_dir)
        if removed:
            print(f"  Removed {removed} old backup(s)")
        return EXIT_OK

    conn = open_connection(db_path)
    try:
        if args.db_command == "migrate":
            applied = apply_migrations(conn, dry_run=args.dry_run, backup_dir=db_path.parent / "backups")
            print(f"{'Would apply' if args.dry_run else 'Applied'} {applied} migration(s)")
            return EXIT_OK

        if args.db_command == "verify":
            healthy = verify_schema(conn) and integrity_check(conn)
            print("✓ Database is healthy" if healthy else "✗ Database has issues")
            return EXIT_OK if healthy else EXIT_ERROR

        stats = get_database_stats(conn)
        print("Database Statistics:")
        print(f"  Schema version: {stats['schema_version']}")
        print(f"  Tables: {stats['tables_count']}")
        print(f"  Indices: {stats['indices_count']}")
        if "db_size_mb" in stats:
            print(f"  Size: {stats['db_size_mb']} MB")
        print("  Row counts:")
        for table, count in stats["row_counts"].items():
            print(f"    {table}: {count}")
        return EXIT_OK
    finally:
        conn.close()


# ============================================================
# Fraud commands
# ============================================================

def cmd_analyze(args, conn) -> int:
    require(validate_identifier(args.user, "user"))
    require(validate_amount(args.amount))

    settings = load_settings()
    engine = FraudDetectionEngine(conn, settings=settings)
    fingerprint = fingerprint_from_dict(_load_json(args.fingerprint)) if args.fingerprint else None
    events = _load_json(args.events) if args.events else None

    started_at = None
    if events:
        span_ms = max(float(e.get("t", 0)) for e in events)
        started_at = utc_now() - timedelta(milliseconds=span_ms)

    engine.initialize_session(
        args.user, fingerprint, started_at=started_at, track_behavior=events is not None,
    )
    if events:
        replay_events(engine, events)

    workflow = TransactionReviewWorkflow(conn, engine=engine, settings=settings)
    try:
        assessment = workflow.analyze_transaction(
            args.user, args.amount, args.listing, args.seller,
            payment_method_id=args.payment_method,
        )
    finally:
        engine.cleanup()

    if args.json:
        print(json.dumps(assessment.to_dict(), indent=2))
    else:
        print(f"Risk score: {assessment.risk_score}")
        print(f"Recommendation: {assessment.recommendation.value.upper()}")
        for signal in assessment.signals:
            flag = " [action required]" if signal.action_required else ""
            print(f"  - {signal.severity.value:<8} {signal.confidence:>3}  {signal.description}{flag}")
    return RECOMMENDATION_EXIT_CODES[assessment.recommendation]


def cmd_signals(args, conn) -> int:
    workflow = TransactionReviewWorkflow(conn)
    signals = workflow.load_recent_signals(args.user)
    if not signals:
        print(f"No signals for {args.user} in the last 7 days")
    for s in signals:
        fp = "" if s.false_positive is None else (" (false positive)" if s.false_positive else " (confirmed)")
        print(f"{s.timestamp}  {s.id}  {s.severity.value:<8} {s.description}{fp}")
    return EXIT_OK


def cmd_trust(args, conn) -> int:
    trust = TrustScoreWorkflow(conn)
    if args.verification:
        score = trust.set_verification_level(args.user, VerificationLevel(args.verification))
    elif args.recalculate:
        score = trust.recalculate(args.user)
    else:
        score = TransactionReviewWorkflow(conn).load_trust_score(args.user)

    status = TransactionReviewWorkflow(conn).get_security_status(args.user)
    print(f"Trust score: {score}")
    print(f"Status: {status.level} ({status.color}) - {status.message}")
    return EXIT_OK


def cmd_order(args, conn) -> int:
    if args.order_command == "add":
        require(validate_amount(args.amount))
        order_id = OrdersRepository(conn).create(Order(
            id=args.id or "",
            buyer_id=args.buyer,
            seller_id=args.seller,
            total_amount=args.amount,
            listing_id=args.listing,
        ))
        print(order_id)
        return EXIT_OK

    score = TrustScoreWorkflow(conn).change_order_status(args.order_id, OrderStatus(args.status))
    print(f"Order {args.order_id} -> {args.status}")
    if score is not None:
        print(f"Buyer trust score: {score}")
    return EXIT_OK


def cmd_review(args, conn) -> int:
    review_id = AdminReviewWorkflow(conn).review_signal(
        args.signal_id, args.reviewer, approve=args.approve, reason=args.reason,
    )
    print(f"✓ Review recorded: {review_id}")
    return EXIT_OK


def cmd_false_positive(args, conn) -> int:
    ok = TransactionReviewWorkflow(conn).report_false_positive(args.signal_id)
    print("✓ Feedback recorded" if ok else "❌ Failed to record feedback")
    return EXIT_OK if ok else EXIT_ERROR


def cmd_dashboard(args, conn) -> int:
    admin = AdminReviewWorkflow(conn)
    metrics = admin.dashboard_metrics(args.range)
    payload = {
        "metrics": metrics,
        "recent_signals": [s.to_dict() for s in admin.recent_signals()],
        "trust_distribution": admin.trust_distribution(),
    }
    if args.json:
        print(json.dumps(payload, indent=2))
        return EXIT_OK

    print(f"Fraud dashboard ({metrics['time_range']})")
    print("-" * 60)
    print(f"  Signals: {metrics['total_signals']}  " + "  ".join(
        f"{k}={v}" for k, v in metrics["signals_by_severity"].items()
    ))
    print(f"  Pending reviews: {metrics['pending_reviews']}")
    print(f"  False positive rate: {metrics['false_positive_rate']:.1%}")
    print(f"  Assessments: {metrics['total_assessments']}  avg risk {metrics['average_risk_score']}")
    print(f"  Blocked: {metrics['blocked_transactions']}  Reviewed: {metrics['reviewed_transactions']}")
    print("Trust distribution:")
    for bucket in payload["trust_distribution"]:
        print(f"  {bucket['range']:>7}: {bucket['count']}")
    return EXIT_OK


def cmd_rules(args, conn) -> int:
    if args.rules_command == "list":
        for rule in RulesRepository(conn).list():
            state = "on " if rule["is_active"] else "off"
            print(f"[{state}] {rule['rule_name']:<32} {rule['rule_type']:<10} {json.dumps(rule['threshold_config'])}")
        return EXIT_OK

    AdminReviewWorkflow(conn).set_rule_active(args.name, args.rules_command == "enable")
    print(f"✓ Rule '{args.name}' {args.rules_command}d")
    return EXIT_OK


# ============================================================
# Parser
# ============================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="craftlocal-fraud",
        description="Marketplace fraud detection engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--db", type=str, help=f"Database path (default: {DB_PATH})")
    parser.add_argument("--verbose", action="store_true", help="Log to console down to INFO")
    sub = parser.add_subparsers(dest="command", required=True)

    db = sub.add_parser("db", help="Database maintenance")
    db_sub = db.add_subparsers(dest="db_command", required=True)
    init = db_sub.add_parser("init")
    init.add_argument("--force", action="store_true", help="Delete the existing database first")
    migrate = db_sub.add_parser("migrate")
    migrate.add_argument("--dry-run", action="store_true")
    db_sub.add_parser("verify")
    db_sub.add_parser("stats")
    backup = db_sub.add_parser("backup")
    backup.add_argument("--keep", type=int, default=10, help="Backups to keep (default: 10)")

    analyze = sub.add_parser("analyze", help="Assess a checkout")
    analyze.add_argument("--user", required=True)
    analyze.add_argument("--amount", type=float, required=True)
    analyze.add_argument("--listing", required=True)
    analyze.add_argument("--seller", required=True)
    analyze.add_argument("--payment-method")
    analyze.add_argument("--fingerprint", help="JSON file with the client device fingerprint")
    analyze.add_argument("--events", help="JSON file with recorded interaction events")
    analyze.add_argument("--json", action="store_true")

    signals = sub.add_parser("signals", help="Recent signals of a user")
    signals.add_argument("--user", required=True)

    trust = sub.add_parser("trust", help="Show or update a trust score")
    trust.add_argument("--user", required=True)
    trust.add_argument("--verification", choices=[v.value for v in VerificationLevel])
    trust.add_argument("--recalculate", action="store_true")

    order = sub.add_parser("order", help="Record orders and status changes")
    order_sub = order.add_subparsers(dest="order_command", required=True)
    add = order_sub.add_parser("add")
    add.add_argument("--id")
    add.add_argument("--buyer", required=True)
    add.add_argument("--seller", required=True)
    add.add_argument("--amount", type=float, required=True)
    add.add_argument("--listing")
    status = order_sub.add_parser("status")
    status.add_argument("order_id")
    status.add_argument("status", choices=[s.value for s in OrderStatus])

    review = sub.add_parser("review", help="Approve or reject a signal")
    review.add_argument("signal_id")
    review.add_argument("--reviewer", required=True)
    decision = review.add_mutually_exclusive_group(required=True)
    decision.add_argument("--approve", action="store_true", help="False positive")
    decision.add_argument("--reject", action="store_true", help="Confirmed fraud")
    review.add_argument("--reason")

    fp = sub.add_parser("false-positive", help="Report a signal as false positive")
    fp.add_argument("signal_id")

    dashboard = sub.add_parser("dashboard", help="Fraud dashboard metrics")
    dashboard.add_argument("--range", choices=list(TIME_RANGES_HOURS), default=DEFAULT_TIME_RANGE)
    dashboard.add_argument("--json", action="store_true")

    rules = sub.add_parser("rules", help="Detection rules")
    rules_sub = rules.add_subparsers(dest="rules_command", required=True)
    rules_sub.add_parser("list")
    for action in ("enable", "disable"):
        toggle = rules_sub.add_parser(action)
        toggle.add_argument("name")

    return parser


COMMANDS = {
    "analyze": cmd_analyze,
    "signals": cmd_signals,
    "trust": cmd_trust,
    "order": cmd_order,
    "review": cmd_review,
    "false-positive": cmd_false_positive,
    "dashboard": cmd_dashboard,
    "rules": cmd_rules,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(console_level=logging.INFO if args.verbose else logging.CRITICAL)

    try:
        if args.command == "db":
            return cmd_db(args)

        db_path = Path(args.db) if args.db else DB_PATH
        conn = initialize_database(db_path)
        try:
            return COMMANDS[args.command](args, conn)
        finally:
            conn.close()

    except (RepositoryError, ValueError, OSError, RuntimeError) as e:
        context = format_error(e, operation=args.command)
        logger.error(context.format_for_log())
        print(context.format_for_display())
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
