import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable

from .common.config import settings
from .common.logging_setup import setup_logging
from .common.db import apply_schema, test_connection

from services.pipeline import AnalyticsEngine, build_engine
from services.storage.postgres_store import PostgresStore


def _emit(result: Any) -> None:
    if dataclasses.is_dataclass(result) and not isinstance(result, type):
        result = dataclasses.asdict(result)
    elif hasattr(result, "to_dict"):
        result = result.to_dict()
    print(json.dumps(result, indent=2, default=str))


def _run(handler: Callable[[AnalyticsEngine, argparse.Namespace], Awaitable[Any]], args: argparse.Namespace) -> Any:
    async def main():
        store = await PostgresStore.connect(settings.database_url)
        try:
            return await handler(build_engine(store), args)
        finally:
            await store.close()

    return asyncio.run(main())


def _parse_date(value: str) -> date:
    return date.fromisoformat(value)


def _parse_since(value: str) -> datetime:
    return datetime.combine(date.fromisoformat(value), datetime.min.time(), tzinfo=timezone.utc)


def cmd_init_db(_: argparse.Namespace) -> None:
    setup_logging()
    logging.info("initializing database schema")
    apply_schema()
    logging.info("schema applied")


def cmd_health(_: argparse.Namespace) -> None:
    setup_logging()
    logging.info("testing database connectivity")
    ok = test_connection()
    logging.info({"db": "ok" if ok else "unreachable"})
    if not ok:
        sys.exit(1)


async def _sync(engine: AnalyticsEngine, args: argparse.Namespace):
    if engine.ingestion is None:
        raise SystemExit("INDEXER_BASE_URL must be set to sync transactions")
    wallet_ids = list(args.wallet or [])
    if args.project:
        wallet_ids += [w.wallet_id for w in await engine.store.get_project_wallets(args.project)]
    return await engine.ingestion.sync_wallets(wallet_ids, since=args.since)


def cmd_sync(args: argparse.Namespace) -> None:
    setup_logging()
    _emit(_run(_sync, args).to_dict())


def cmd_process_cohorts(args: argparse.Namespace) -> None:
    setup_logging()
    _emit(_run(lambda engine, _: engine.cohorts.process_unassigned(), args).to_dict())


def cmd_backfill_cohorts(args: argparse.Namespace) -> None:
    setup_logging()
    batch = _run(lambda engine, a: engine.cohorts.create_for_range(a.start, a.end, a.type), args)
    _emit(batch.to_dict())


def cmd_recompute_stages(args: argparse.Namespace) -> None:
    setup_logging()
    _emit(_run(lambda engine, a: engine.stages.recompute_project(a.project), args).to_dict())


def cmd_recompute_scores(args: argparse.Namespace) -> None:
    setup_logging()
    _emit(_run(lambda engine, a: engine.scorer.recompute_project(a.project), args).to_dict())


def cmd_retention(args: argparse.Namespace) -> None:
    setup_logging()
    _emit(_run(lambda engine, a: engine.retention.calculate_all(a.type), args).to_dict())


def cmd_report(args: argparse.Namespace) -> None:
    setup_logging()
    report = _run(
        lambda engine, a: engine.conversion.generate_report(
            a.project, min_sample_size=a.min_sample, granularity=a.granularity
        ),
        args,
    )
    _emit(report)


def cmd_insights(args: argparse.Namespace) -> None:
    setup_logging()
    report = _run(
        lambda engine, a: engine.correlation.generate_insights(a.project, active_only=not a.all_wallets),
        args,
    )
    _emit(report)


def cmd_dashboard(args: argparse.Namespace) -> None:
    setup_logging()
    text = _run(lambda engine, a: engine.dashboard.export(a.project, a.format), args)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            f.write(text)
        logging.info("dashboard written to %s", args.output)
    else:
        print(text)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser("wallet-analytics")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("init-db").set_defaults(func=cmd_init_db)
    sub.add_parser("health").set_defaults(func=cmd_health)

    p_sync = sub.add_parser("sync")
    p_sync.add_argument("--project")
    p_sync.add_argument("--wallet", action="append")
    p_sync.add_argument("--since", type=_parse_since)
    p_sync.set_defaults(func=cmd_sync)

    sub.add_parser("process-cohorts").set_defaults(func=cmd_process_cohorts)

    p_backfill = sub.add_parser("backfill-cohorts")
    p_backfill.add_argument("--start", type=_parse_date, required=True)
    p_backfill.add_argument("--end", type=_parse_date, required=True)
    p_backfill.add_argument("--type", choices=["weekly", "monthly"], default="weekly")
    p_backfill.set_defaults(func=cmd_backfill_cohorts)

    p_stages = sub.add_parser("recompute-stages")
    p_stages.add_argument("--project", required=True)
    p_stages.set_defaults(func=cmd_recompute_stages)

    p_scores = sub.add_parser("recompute-scores")
    p_scores.add_argument("--project", required=True)
    p_scores.set_defaults(func=cmd_recompute_scores)

    p_ret = sub.add_parser("retention")
    p_ret.add_argument("--type", choices=["weekly", "monthly"])
    p_ret.set_defaults(func=cmd_retention)

    p_report = sub.add_parser("report")
    p_report.add_argument("--project", required=True)
    p_report.add_argument("--min-sample", type=int)
    p_report.add_argument("--granularity", choices=["day", "week", "month"], default="week")
    p_report.set_defaults(func=cmd_report)

    p_insights = sub.add_parser("insights")
    p_insights.add_argument("--project")
    p_insights.add_argument("--all-wallets", action="store_true")
    p_insights.set_defaults(func=cmd_insights)

    p_dash = sub.add_parser("dashboard")
    p_dash.add_argument("--project", required=True)
    p_dash.add_argument("--format", choices=["json", "csv"], default="json")
    p_dash.add_argument("--output")
    p_dash.set_defaults(func=cmd_dashboard)

    return p


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":
    main()
