"""
Command-line interface for governance pipeline operations.
"""

import json
from datetime import timedelta
from typing import Optional

import click
import pandas as pd

from rwe_governance.exceptions import GovernanceException
from rwe_governance.export.packager import render_metadata_document
from rwe_governance.integration import GovernancePipeline
from rwe_governance.logging_config import setup_logging, get_logger

setup_logging()
logger = get_logger(__name__)


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
@click.option('--data-dir', default=None, help='Directory of the JSON snapshot stores')
@click.option('--audit-log', default=None, help='JSON Lines audit log path')
@click.pass_context
def cli(ctx, data_dir: Optional[str], audit_log: Optional[str]):
    """RWE Governance Command Line Interface"""
    ctx.ensure_object(dict)
    ctx.obj['data_dir'] = data_dir
    ctx.obj['audit_log'] = audit_log


def get_pipeline(ctx) -> GovernancePipeline:
    """Pipeline over the JSON-file stores, built once per invocation"""
    if 'pipeline' not in ctx.obj:
        ctx.obj['pipeline'] = GovernancePipeline(
            backend='json',
            data_dir=ctx.obj.get('data_dir'),
            audit_log_path=ctx.obj.get('audit_log'),
        )
    return ctx.obj['pipeline']


@cli.group()
def consent():
    """Research consent commands"""
    pass


@consent.command('sweep')
@click.pass_context
def consent_sweep(ctx):
    """Withdraw granted consents whose expiry has passed"""
    click.echo("Processing expired consents...")

    try:
        count = get_pipeline(ctx).consent_ledger.process_expired()
        click.echo(f"✓ {count} expired consent(s) withdrawn")
    except GovernanceException as e:
        click.echo(f"✗ Consent sweep failed: {e.message}", err=True)
        raise click.Abort()


@consent.command('summary')
@click.pass_context
def consent_summary(ctx):
    """Show participation counts per consent scope"""
    summary = get_pipeline(ctx).consent_ledger.get_participation_summary()
    _echo_json(summary)


@cli.group()
def cohort():
    """Cohort commands"""
    pass


@cohort.command('stats')
@click.argument('cohort_id')
@click.option('--min-cell-size', default=0, type=int, help='Suppress distribution cells below this count')
@click.pass_context
def cohort_stats(ctx, cohort_id: str, min_cell_size: int):
    """Show statistics for a cohort"""
    stats = get_pipeline(ctx).cohort_builder.get_statistics(cohort_id, min_cell_size=min_cell_size)
    if stats is None:
        click.echo(f"✗ Cohort not found: {cohort_id}", err=True)
        raise click.Abort()
    _echo_json(stats)


@cli.group()
def export():
    """RWE export commands"""
    pass


@export.command('metadata')
@click.argument('export_id')
@click.option('--output', type=click.Path(), help='Write the document to this file')
@click.pass_context
def export_metadata(ctx, export_id: str, output: Optional[str]):
    """Render the metadata document of an export package"""
    package = get_pipeline(ctx).export_packager.get_export(export_id)
    if package is None:
        click.echo(f"✗ Export not found: {export_id}", err=True)
        raise click.Abort()

    document = render_metadata_document(package)
    if output:
        with open(output, 'w', encoding='utf-8') as f:
            f.write(document)
        click.echo(f"✓ Metadata document saved to {output}")
    else:
        click.echo(document)


@cli.group()
def quality():
    """Data quality commands"""
    pass


@quality.command('score')
@click.argument('csv_path', type=click.Path(exists=True))
@click.option('--participant-id', default='P-LOCAL', help='Participant ID the score is stored under')
@click.option('--expected-daily-signals', type=float, default=None, help='Expected signals per day')
@click.pass_context
def quality_score(ctx, csv_path: str, participant_id: str, expected_daily_signals: Optional[float]):
    """Score a timestamp,value CSV series"""
    click.echo(f"Loading signal series from {csv_path}...")

    try:
        frame = pd.read_csv(csv_path)
        missing = {'timestamp', 'value'} - set(frame.columns)
        if missing:
            click.echo(f"✗ Missing columns: {', '.join(sorted(missing))}", err=True)
            raise click.Abort()

        frame['timestamp'] = pd.to_datetime(frame['timestamp'], utc=True)
        points = [
            {'timestamp': row.timestamp.to_pydatetime(), 'value': float(row.value)}
            for row in frame.itertuples(index=False)
        ]
        click.echo(f"Loaded {len(points)} signals")

        score = get_pipeline(ctx).quality_scorer.calculate(
            participant_id, points, expected_daily_signals=expected_daily_signals
        )
    except (GovernanceException, ValueError) as e:
        click.echo(f"✗ Scoring failed: {str(e)}", err=True)
        raise click.Abort()

    click.echo(f"\nOverall Score: {score.overall_score}/100")
    click.echo("Dimensions:")
    for name, value in score.dimensions.model_dump().items():
        click.echo(f"  {name}: {value}")
    click.echo(f"Signal Frequency: {score.metrics.signal_frequency.value}")


@cli.group()
def audit():
    """Audit trail commands"""
    pass


@audit.command('report')
@click.option('--days', default=30, type=int, help='Report period in days')
@click.option('--event-type', 'event_types', multiple=True, help='Only these event types')
@click.pass_context
def audit_report(ctx, days: int, event_types):
    """Summarize audit events over the last N days"""
    pipeline = get_pipeline(ctx)
    if pipeline.audit_logger is None:
        click.echo("✗ No audit log configured", err=True)
        raise click.Abort()

    end = pipeline.clock()
    report = pipeline.audit_logger.generate_audit_report(
        end - timedelta(days=days), end, event_types=list(event_types) or None
    )
    _echo_json(report)


@cli.group()
def protocol():
    """Study protocol commands"""
    pass


@protocol.command('init-templates')
@click.pass_context
def protocol_init_templates(ctx):
    """Seed the default protocol templates into an empty library"""
    count = get_pipeline(ctx).protocols.initialize_default_templates()
    click.echo(f"✓ {count} protocol template(s) created")


@protocol.command('irb')
@click.argument('protocol_id')
@click.pass_context
def protocol_irb(ctx, protocol_id: str):
    """Render the IRB submission document of a study protocol"""
    try:
        click.echo(get_pipeline(ctx).protocols.generate_irb_submission(protocol_id))
    except GovernanceException as e:
        click.echo(f"✗ {e.message}", err=True)
        raise click.Abort()


if __name__ == '__main__':
    cli()
