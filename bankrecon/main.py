"""CLI entry point for bank import reconciliation."""

import logging
import sys
from pathlib import Path
from typing import Dict, Optional

import click

from bankrecon.config import LearningConfig, MatcherConfig
from bankrecon.engine.commit import CommitOrchestrator
from bankrecon.engine.errors import ReconciliationError
from bankrecon.engine.importer import ImportService
from bankrecon.engine.matcher import TransactionMatcher
from bankrecon.engine.models import Category, DuplicateStrategy, LearningResult, TransactionType
from bankrecon.engine.patterns import PatternEngine
from bankrecon.parsers.csv_parser import CSVParser, NormalizedBatch
from bankrecon.reports.excel_report import ExcelReportGenerator
from bankrecon.store.memory import CATEGORIES, IMPORTED, TRANSACTIONS, InMemoryRecordStore, RecordStore

logger = logging.getLogger(__name__)


def validate_tolerance(ctx, param, value):
    """Validate date tolerance is non-negative."""
    if value < 0:
        raise click.BadParameter("Date tolerance must be non-negative.")
    return value


def validate_threshold(ctx, param, value):
    """Validate a score threshold is between 0 and 1."""
    if value <= 0 or value > 1:
        raise click.BadParameter("Threshold must be greater than 0 and at most 1.")
    return value


def manual_options(func):
    """Column options shared by every command that reads manual records."""
    options = [
        click.option("--date-col", default="date", help="Date column name in the manual records file."),
        click.option("--amount-col", default="amount", help="Amount column name in the manual records file."),
        click.option("--desc-col", default="description", help="Description column name in the manual records file."),
        click.option("--category-col", default=None, help="Category name column in the manual records file."),
        click.option("--type-col", default=None, help="Income/expenditure column in the manual records file."),
        click.option(
            "--type", "transaction_type",
            type=click.Choice([TransactionType.INCOME.value, TransactionType.EXPENDITURE.value]),
            default=None,
            help="Type of every manual record, for files with unsigned amounts.",
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def manual_parser(
    date_col: str, amount_col: str, desc_col: str, category_col: Optional[str], type_col: Optional[str] = None,
) -> CSVParser:
    column_mapping = {"date": date_col, "amount": amount_col, "description": desc_col}
    if category_col:
        column_mapping["category"] = category_col
    if type_col:
        column_mapping["type"] = type_col
    return CSVParser(column_mapping=column_mapping)


def seed_categories(
    store: RecordStore, batch: NormalizedBatch, transaction_type: Optional[TransactionType] = None,
) -> int:
    """Create a category for every category name in the batch not yet known."""
    known: Dict[str, str] = {c.name.casefold(): c.id for c in store.select(CATEGORIES)}
    created = 0
    for candidate in batch:
        name = candidate.category_name
        if name and name.casefold() not in known:
            category_type = transaction_type or candidate.type
            category = store.insert(CATEGORIES, Category(id="", name=name, type=category_type))
            known[name.casefold()] = category.id
            created += 1
    return created


def echo_learning(result: LearningResult) -> None:
    click.echo(f"  Patterns Created:     {result.patterns_created}")
    click.echo(f"  Patterns Updated:     {result.patterns_updated}")
    click.echo(f"  Patterns Skipped:     {result.patterns_skipped}")
    for top in result.top_patterns:
        click.echo(f"    {top.pattern:<24} -> {top.category_name} ({top.confidence}, x{top.match_count})")


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Log debug output.")
def main(verbose: bool) -> None:
    """
    Bank Import Reconciliation Tool

    Stages bank CSV exports against manually kept records, proposes matches
    and category suggestions, and writes a review workbook.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


@main.command()
@click.option(
    "--bank", "-b",
    required=True,
    type=click.Path(exists=True),
    help="Path to the bank statement export (CSV).",
)
@click.option(
    "--manual", "-m",
    required=True,
    type=click.Path(exists=True),
    help="Path to the manually kept records (CSV).",
)
@click.option(
    "--output", "-o",
    required=True,
    type=click.Path(),
    help="Path for the output review workbook.",
)
@click.option(
    "--date-tolerance", "-d",
    default=3,
    type=int,
    callback=validate_tolerance,
    help="Maximum days between matched transactions (default: 3).",
)
@click.option(
    "--high-threshold",
    default=0.85,
    type=float,
    callback=validate_threshold,
    help="Lowest score of a HIGH confidence match (default: 0.85).",
)
@click.option(
    "--medium-threshold",
    default=0.6,
    type=float,
    callback=validate_threshold,
    help="Lowest score of a MEDIUM confidence match (default: 0.6).",
)
@click.option(
    "--low-threshold",
    default=0.3,
    type=float,
    callback=validate_threshold,
    help="Lowest score of any match (default: 0.3).",
)
@click.option(
    "--duplicates",
    type=click.Choice([s.value for s in DuplicateStrategy]),
    default=DuplicateStrategy.SKIP.value,
    help="How rows already staged are handled (default: skip).",
)
@click.option(
    "--auto-accept-high/--no-auto-accept-high",
    default=False,
    help="Mark HIGH confidence matches as accepted straight away.",
)
@click.option(
    "--learn/--no-learn",
    default=True,
    help="Learn category patterns from the manual records before matching.",
)
@click.option("--account", default="default", help="Account id the records belong to.")
@manual_options
def reconcile(
    bank: str,
    manual: str,
    output: str,
    date_tolerance: int,
    high_threshold: float,
    medium_threshold: float,
    low_threshold: float,
    duplicates: str,
    auto_accept_high: bool,
    learn: bool,
    account: str,
    date_col: str,
    amount_col: str,
    desc_col: str,
    category_col: Optional[str],
    type_col: Optional[str],
    transaction_type: Optional[str],
) -> None:
    """
    Match a bank export against manual records and write a review workbook.

    Example:
        bankrecon reconcile --bank revolut.csv --manual records.csv --output review.xlsx
    """
    click.echo("=" * 60)
    click.echo("  BANK IMPORT RECONCILIATION")
    click.echo("=" * 60)

    try:
        store = InMemoryRecordStore()
        matcher = TransactionMatcher(MatcherConfig(
            date_tolerance_days=date_tolerance,
            high_threshold=high_threshold,
            medium_threshold=medium_threshold,
            low_threshold=low_threshold,
            auto_accept_high=auto_accept_high,
        ))
        patterns = PatternEngine(store, LearningConfig())
        importer = ImportService(store, matcher, patterns)

        # Step 1: Load manual records
        click.echo(f"\n  Loading manual records: {manual}...")
        manual_type = TransactionType(transaction_type) if transaction_type else None
        manual_batch = manual_parser(date_col, amount_col, desc_col, category_col, type_col).parse(Path(manual))
        seed_categories(store, manual_batch, manual_type)
        manual_summary = importer.import_manual(account, manual_batch, transaction_type=manual_type)
        click.echo(f"   Loaded {manual_summary.written} manual transactions")
        for warning in manual_summary.warnings:
            click.echo(f"   WARNING: {warning}")

        # Step 2: Learn category patterns
        if learn:
            click.echo("\n  Learning category patterns...")
            learning = patterns.learn_from_history(account)
            echo_learning(learning)

        # Step 3: Stage and match the bank export
        click.echo(f"\n  Importing bank statement: {bank}...")
        bank_batch = CSVParser().parse(Path(bank))
        summary = importer.import_statement(account, bank_batch, DuplicateStrategy(duplicates))
        click.echo(
            f"   Staged {summary.written} of {summary.total_rows} rows "
            f"({summary.excluded} excluded, {len(summary.failed)} failed)"
        )

        # Step 4: Generate the review workbook
        click.echo(f"\n  Generating review workbook: {output}...")
        preview = CommitOrchestrator(store).preview(account)
        category_names = {c.id: c.name for c in store.select(CATEGORIES)}
        output_path = ExcelReportGenerator().generate(
            store.select(IMPORTED, account_id=account),
            store.select(TRANSACTIONS, account_id=account),
            summary.matching,
            preview,
            output,
            failures=summary.failed,
            category_names=category_names,
        )

        # Step 5: Print summary
        matching = summary.matching
        click.echo("\n" + "=" * 60)
        click.echo("  MATCHING SUMMARY")
        click.echo("=" * 60)
        click.echo(f"  Imported:             {matching.total_imported}")
        click.echo(f"    +-- High:           {matching.high_confidence_matches}")
        click.echo(f"    +-- Medium:         {matching.medium_confidence_matches}")
        click.echo(f"    +-- Low:            {matching.low_confidence_matches}")
        click.echo(f"  Unmatched:            {matching.unmatched}")
        click.echo(f"  Awaiting Review:      {preview.potential_transactions}")
        click.echo(f"  Manual To Replace:    {preview.manual_transactions_to_delete}")
        click.echo("=" * 60)
        click.echo(f"\n  Review workbook saved to: {output_path.absolute()}")

    except FileNotFoundError as e:
        click.echo(f"\n  ERROR: {e}", err=True)
        sys.exit(1)
    except (ReconciliationError, ValueError) as e:
        click.echo(f"\n  ERROR: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        logger.exception("Unexpected error during reconciliation")
        click.echo(f"\n  UNEXPECTED ERROR: {e}", err=True)
        sys.exit(2)


@main.command()
@click.option(
    "--records", "-r",
    required=True,
    type=click.Path(exists=True),
    help="Path to categorized manual records (CSV).",
)
@click.option("--account", default="default", help="Account id the records belong to.")
@click.option(
    "--min-group-size",
    default=2,
    type=click.IntRange(min=1),
    help="Times a description must be seen with a category (default: 2).",
)
@manual_options
def learn(
    records: str,
    account: str,
    min_group_size: int,
    date_col: str,
    amount_col: str,
    desc_col: str,
    category_col: Optional[str],
    type_col: Optional[str],
    transaction_type: Optional[str],
) -> None:
    """Learn category patterns from categorized records and list the strongest."""
    try:
        store = InMemoryRecordStore()
        manual_type = TransactionType(transaction_type) if transaction_type else None
        parser = manual_parser(date_col, amount_col, desc_col, category_col or "category", type_col)
        batch = parser.parse(Path(records))
        seed_categories(store, batch, manual_type)
        ImportService(store).import_manual(account, batch, transaction_type=manual_type)

        result = PatternEngine(store, LearningConfig(min_group_size=min_group_size)).learn_from_history(account)

        click.echo("=" * 60)
        click.echo("  PATTERN LEARNING SUMMARY")
        click.echo("=" * 60)
        click.echo(f"  Transactions:         {result.total_transactions}")
        echo_learning(result)

    except FileNotFoundError as e:
        click.echo(f"\n  ERROR: {e}", err=True)
        sys.exit(1)
    except (ReconciliationError, ValueError) as e:
        click.echo(f"\n  ERROR: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        logger.exception("Unexpected error during pattern learning")
        click.echo(f"\n  UNEXPECTED ERROR: {e}", err=True)
        sys.exit(2)


if __name__ == "__main__":
    main()
