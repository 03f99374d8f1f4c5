import argparse
from datetime import date, timedelta
from typing import Optional

from game_rewards.config import GameProvider, ProviderRegistry, Settings, parse_provider
from game_rewards.database import Base, build_engine, build_session_factory, utcnow
from game_rewards.logging_config import get_logger
from game_rewards.reconciliation import generate_daily_report, parse_report_date


logger = get_logger("game_rewards.reconcile")


def reconcile(
    providers: list[GameProvider],
    report_date: date,
    settings: Optional[Settings] = None,
) -> int:
    """
    Generate one daily report per provider. Returns 1 when any report has
    discrepancies so the job can alert.
    """
    settings = settings or Settings()
    engine = build_engine(settings.db_url)
    Base.metadata.create_all(bind=engine)
    session_factory = build_session_factory(engine)

    discrepancies = 0
    db = session_factory()
    try:
        for provider in providers:
            report = generate_daily_report(db, provider, report_date)
            logger.info(
                "Reconciled provider=%s date=%s transactions=%s matched=%s discrepancies=%s",
                provider.value,
                report.date,
                report.provider_transaction_count,
                report.matched_count,
                report.discrepancy_count,
            )
            discrepancies += report.discrepancy_count
    finally:
        db.close()
    return 1 if discrepancies else 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Reconcile game rewards against the balance ledger")
    parser.add_argument("--provider", help="gamezop, adjoe or qureka; defaults to every configured provider")
    parser.add_argument("--date", help="UTC day as YYYY-MM-DD; defaults to yesterday")
    args = parser.parse_args(argv)

    if args.provider:
        provider = parse_provider(args.provider)
        if provider is None:
            parser.error(f"unknown provider: {args.provider}")
        providers = [provider]
    else:
        providers = [config.provider for config in ProviderRegistry.from_env().all()]
        if not providers:
            logger.warning("No providers configured; nothing to reconcile")
            return 0

    if args.date:
        try:
            report_date = parse_report_date(args.date)
        except ValueError:
            parser.error("--date must be YYYY-MM-DD")
    else:
        report_date = utcnow().date() - timedelta(days=1)

    return reconcile(providers, report_date)


if __name__ == "__main__":
    raise SystemExit(main())
