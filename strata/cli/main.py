"""Main CLI entrypoint for Strata."""

import json
import logging
import os
import sys
from typing import Any, Dict, Optional

import click

from ..config import load_settings
from ..envman import redact_secrets, secrets
from ..errors import StrataError, TeardownCancelled, ValidationError
from ..orchestrator import Orchestrator, ProjectOptions, TeardownReport
from ..tags import parse_user_tags

SOURCE_TOKEN_ENV = "STRATA_SOURCE_TOKEN"
PARTIAL_FAILURE_EXIT = 5

environment_option = click.option(
    '--environment', '-e', required=True, type=click.Choice(['dev', 'staging', 'prod']),
    help='Target environment',
)
variant_option = click.option(
    '--compute-variant', 'variant', default='fargate', type=click.Choice(['fargate', 'ec2']),
    show_default=True, help='Compute variant',
)


@click.group()
@click.option('--config', 'config_path', type=click.Path(dir_okay=False), help='Path to strata.yaml')
@click.option('--region', help='AWS region')
@click.option('--profile', help='AWS named profile')
@click.option('--verbose', '-v', is_flag=True, help='Debug logging')
@click.pass_context
def main(ctx, config_path, region, profile, verbose):
    """Strata - shared and project stack lifecycle."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
        datefmt='%H:%M:%S',
    )
    # boto's own debug output drowns everything else
    for noisy in ('botocore', 'boto3', 'urllib3', 's3transfer'):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path
    ctx.obj['overrides'] = {'region': region, 'profile': profile}


def _orchestrator(ctx, dry_run: bool = False, **overrides) -> Orchestrator:
    settings = load_settings(
        ctx.obj.get('config_path'),
        overrides={**ctx.obj.get('overrides', {}), **overrides},
    )
    return Orchestrator(settings, dry_run=dry_run)


def _fail(error: StrataError) -> None:
    """Render an orchestration error and exit with its code."""
    click.echo(f"❌ {redact_secrets(error.message)}", err=True)
    for problem in getattr(error, 'problems', []):
        click.echo(f"   - {problem}", err=True)
    for event in getattr(error, 'events', []):
        click.echo(f"   {redact_secrets(event.describe())}", err=True)
    for blocker in getattr(error, 'blockers', []):
        click.echo(f"   - {blocker}", err=True)
    report = getattr(error, 'report', None)
    if report is not None:
        for resource in report.retained:
            click.echo(f"   retained: {resource.logical_id} [{resource.resource_type}] "
                       f"{resource.physical_id or ''}", err=True)
        for resource_id, reason in report.orphan_failures.items():
            click.echo(f"   not removed: vpc-link/{resource_id}: {reason}", err=True)
    if error.remediation:
        click.echo(f"👉 {error.remediation}", err=True)
    sys.exit(error.exit_code)


def _user_tags(tags) -> Dict[str, str]:
    try:
        return parse_user_tags(list(tags))
    except ValueError as e:
        raise ValidationError(str(e))


def _confirm_destroy(target: str, force: bool) -> None:
    if force:
        return
    click.echo(click.style(f"⚠️  This permanently deletes {target} and its data.", fg='yellow'))
    answer = click.prompt("Type DELETE to continue", default='', show_default=False)
    if answer != 'DELETE':
        raise TeardownCancelled(f"Teardown of {target} cancelled")


def _print_teardown(report: TeardownReport) -> bool:
    """Print a teardown report. Returns True when it finished cleanly."""
    if not report.existed:
        click.echo(f"ℹ️  {report.stack_name} did not exist")
    for warning in report.warnings:
        click.echo(click.style(f"⚠️  {warning}", fg='yellow'))
    for resource in report.retained:
        click.echo(click.style(
            f"⚠️  Retained {resource.logical_id} [{resource.resource_type}] {resource.physical_id or ''}",
            fg='yellow',
        ))
    for member, reason in report.partial_failures.items():
        click.echo(click.style(f"❌ Not removed: {member}: {reason}", fg='red'))

    if report.partial_failures:
        click.echo(f"⚠️  {report.stack_name} deleted with {len(report.partial_failures)} leftover(s)")
        return False
    click.echo(click.style(f"✅ {report.stack_name} torn down", fg='green'))
    return True


@main.group()
def deploy():
    """Create or update stacks."""


@deploy.command('shared')
@environment_option
@variant_option
@click.option('--template-bucket', help='S3 bucket for templates')
@click.option('--template-prefix', help='Key prefix inside the templates bucket')
@click.option('--tag', 'tags', multiple=True, help='Extra stack tag key=value')
@click.option('--skip-upload', is_flag=True, help='Reuse previously published templates')
@click.option('--no-rollback', is_flag=True, help='Keep resources of a failed initial create')
@click.option('--dry-run', is_flag=True, help='Show what would be done')
@click.pass_context
def deploy_shared(ctx, environment, variant, template_bucket, template_prefix, tags,
                  skip_upload, no_rollback, dry_run):
    """Deploy the shared stack of an environment."""
    try:
        orchestrator = _orchestrator(
            ctx, dry_run=dry_run,
            templates_bucket=template_bucket,
            templates_prefix=template_prefix,
            rollback_on_failure=False if no_rollback else None,
        )
        context = orchestrator.resolve_context(environment, variant)
        click.echo(f"🚀 Deploying {context.names().stack} to {context.account_id}/{context.region}")

        result = orchestrator.apply_shared(context, skip_upload=skip_upload, user_tags=_user_tags(tags))
        _print_apply(result)
    except StrataError as e:
        _fail(e)


@deploy.command('project')
@click.option('--service', '-s', required=True, help='Service name')
@environment_option
@variant_option
@click.option('--source-repo', required=True, help='organization/project/repository')
@click.option('--branch', default='main', show_default=True)
@click.option('--path-pattern', default='/api/*', show_default=True, help='Listener rule path pattern')
@click.option('--priority', default=100, show_default=True, type=int, help='Listener rule priority')
@click.option('--cpu', default=512, show_default=True, type=int)
@click.option('--memory', default=1024, show_default=True, type=int)
@click.option('--desired-count', default=0, show_default=True, type=int)
@click.option('--health-check-path', default='/health', show_default=True)
@click.option('--container-port', default=80, show_default=True, type=int)
@click.option('--path-base', default='', help='Application path base')
@click.option('--template-bucket', help='S3 bucket for templates')
@click.option('--tag', 'tags', multiple=True, help='Extra stack tag key=value')
@click.option('--skip-upload', is_flag=True, help='Reuse previously published templates')
@click.option('--no-rollback', is_flag=True, help='Keep resources of a failed initial create')
@click.option('--no-trigger-pipeline', is_flag=True, help='Do not start the build pipeline')
@click.option('--dry-run', is_flag=True, help='Show what would be done')
@click.pass_context
def deploy_project(ctx, service, environment, variant, source_repo, branch, path_pattern, priority,
                   cpu, memory, desired_count, health_check_path, container_port, path_base,
                   template_bucket, tags, skip_upload, no_rollback, no_trigger_pipeline, dry_run):
    """Deploy one service's project stack."""
    try:
        orchestrator = _orchestrator(
            ctx, dry_run=dry_run,
            templates_bucket=template_bucket,
            rollback_on_failure=False if no_rollback else None,
        )
        context = orchestrator.resolve_context(environment, variant, service=service, require_service=True)
        click.echo(f"🚀 Deploying {context.names().stack} to {context.account_id}/{context.region}")

        options = ProjectOptions(
            source_repo=source_repo,
            branch=branch,
            path_pattern=path_pattern,
            priority=priority,
            cpu=cpu,
            memory=memory,
            desired_count=desired_count,
            health_check_path=health_check_path,
            container_port=container_port,
            path_base=path_base,
        )
        result = orchestrator.apply_project(
            context,
            options,
            skip_upload=skip_upload,
            user_tags=_user_tags(tags),
            trigger_pipeline=not no_trigger_pipeline,
            source_token=os.environ.get(SOURCE_TOKEN_ENV) or None,
        )
        _print_apply(result)
        if not result.dry_run and not os.environ.get(SOURCE_TOKEN_ENV):
            secret_id = context.names().source_secret_id
            click.echo(f"👉 Set the source token with: strata secret set --secret-id {secret_id}")
    except StrataError as e:
        _fail(e)


def _print_apply(result) -> None:
    if result.dry_run:
        click.echo(f"📝 Dry run: would {result.operation.value} {result.stack_name}")
        return
    if not result.changed:
        click.echo(click.style(f"✅ {result.stack_name} is up to date (no changes)", fg='green'))
    else:
        click.echo(click.style(
            f"✅ {result.stack_name}: {result.operation.value} finished ({result.final_state.value})",
            fg='green',
        ))
    if result.outputs:
        click.echo("📋 Outputs:")
        for key, value in sorted(result.outputs.items()):
            click.echo(f"  {key}: {value}")


@main.group()
def teardown():
    """Delete stacks and the data they hold."""


@teardown.command('shared')
@environment_option
@variant_option
@click.option('--force', is_flag=True, help='Skip the confirmation prompt')
@click.option('--retain-logs', is_flag=True, help='Keep log groups')
@click.option('--delete-bucket', is_flag=True, help='Also delete the templates bucket')
@click.option('--template-bucket', help='S3 bucket for templates')
@click.option('--dry-run', is_flag=True, help='Show what would be done')
@click.pass_context
def teardown_shared(ctx, environment, variant, force, retain_logs, delete_bucket, template_bucket, dry_run):
    """Tear down the shared stack once no project stack depends on it."""
    try:
        orchestrator = _orchestrator(ctx, dry_run=dry_run, templates_bucket=template_bucket)
        context = orchestrator.resolve_context(environment, variant)
        names = context.names()
        orchestrator.gate.check_no_dependents(names)
        if not dry_run:
            _confirm_destroy(names.stack, force)

        click.echo(f"🗑️  Tearing down {names.stack}...")
        report = orchestrator.teardown_shared(context, retain_logs=retain_logs, delete_bucket=delete_bucket)
        if not _print_teardown(report):
            sys.exit(PARTIAL_FAILURE_EXIT)
    except StrataError as e:
        _fail(e)


@teardown.command('project')
@click.option('--service', '-s', 'services', multiple=True, help='Service name (repeatable)')
@click.option('--all', 'all_services', is_flag=True, help='Every project stack of the environment')
@environment_option
@variant_option
@click.option('--parallel', default=1, show_default=True, type=click.IntRange(1, 16),
              help='Stacks torn down at once')
@click.option('--force', is_flag=True, help='Skip the confirmation prompt')
@click.option('--delete-secrets', is_flag=True, help='Force-delete the service secrets')
@click.option('--retain-logs', is_flag=True, help='Keep log groups')
@click.option('--dry-run', is_flag=True, help='Show what would be done')
@click.pass_context
def teardown_project(ctx, services, all_services, environment, variant, parallel, force,
                     delete_secrets, retain_logs, dry_run):
    """Tear down project stacks."""
    try:
        if bool(services) == all_services:
            raise ValidationError("Pass either --service or --all")

        orchestrator = _orchestrator(ctx, dry_run=dry_run)
        context = orchestrator.resolve_context(environment, variant)

        if all_services:
            targets = [stack.service for stack in orchestrator.discover_projects(context)]
            if not targets:
                click.echo(f"ℹ️  No project stacks in {environment}")
                return
        else:
            targets = list(services)
            for service in targets:
                context.for_service(service).names()

        if not dry_run:
            _confirm_destroy(", ".join(targets), force)

        batch = orchestrator.teardown_projects(
            context,
            services=None if all_services else targets,
            parallel=parallel,
            delete_secrets=delete_secrets,
            retain_logs=retain_logs,
        )
        clean = all([_print_teardown(report) for report in batch.reports.values()])
        for service, error in batch.errors.items():
            click.echo(click.style(f"❌ {service}: {redact_secrets(error.message)}", fg='red'), err=True)
            if error.remediation:
                click.echo(f"👉 {error.remediation}", err=True)

        if batch.errors:
            codes = {error.exit_code for error in batch.errors.values()}
            sys.exit(codes.pop() if len(codes) == 1 else PARTIAL_FAILURE_EXIT)
        if not clean:
            sys.exit(PARTIAL_FAILURE_EXIT)
    except StrataError as e:
        _fail(e)


@main.command()
@environment_option
@variant_option
@click.option('--service', '-s', help='Project service; omit for the shared stack')
@click.option('--json', 'output_json', is_flag=True, help='Output machine-readable JSON')
@click.pass_context
def status(ctx, environment, variant, service, output_json):
    """Show stack state, outputs and recent events."""
    try:
        orchestrator = _orchestrator(ctx)
        context = orchestrator.resolve_context(environment, variant, service=service)
        info = orchestrator.status(context)
        if output_json:
            click.echo(json.dumps(info, indent=2))
        else:
            _print_status_human(info)
    except StrataError as e:
        _fail(e)


def _print_status_human(info: Dict[str, Any]) -> None:
    state = info['state']
    healthy = state in ('CREATE_COMPLETE', 'UPDATE_COMPLETE', 'UPDATE_ROLLBACK_COMPLETE')
    click.echo(f"📊 Stack: {info['stack']}")
    click.echo(f"Status: {click.style(state, fg='green' if healthy else 'red')}")

    if info['outputs']:
        click.echo("📋 Outputs:")
        for key, value in sorted(info['outputs'].items()):
            click.echo(f"  {key}: {value}")

    if info.get('projects'):
        click.echo("\n🧩 Project stacks:")
        for project in info['projects']:
            click.echo(f"  {project['service']}: {project['stack']} ({project['state']})")

    last_run = info.get('last_run')
    if last_run:
        click.echo(f"🕒 Last local run: {last_run['type']} at {last_run['ts']}")

    if info['events']:
        click.echo("\n📝 Recent Events:")
        for event in info['events']:
            click.echo(f"  {redact_secrets(event)}")


@main.group()
def secret():
    """Provision and check service secrets."""


@secret.command('set')
@click.option('--secret-id', required=True, help='Secret name or ARN')
@click.option('--region', help='AWS region')
@click.pass_context
def secret_set(ctx, secret_id, region):
    """Store a source token, read from a hidden prompt."""
    try:
        settings = load_settings(ctx.obj.get('config_path'), overrides={**ctx.obj['overrides'], 'region': region})
        token = click.prompt("Source token", hide_input=True)
        secrets.provision(
            secret_id,
            secrets.source_token_material(token),
            region=settings.region,
            profile=settings.profile,
        )
        click.echo(click.style(f"✅ Secret {secret_id} updated", fg='green'))
    except StrataError as e:
        _fail(e)


@secret.command('verify')
@click.option('--secret-id', required=True, help='Secret name or ARN')
@click.option('--region', help='AWS region')
@click.pass_context
def secret_verify(ctx, secret_id, region):
    """Check that a secret holds a real value."""
    try:
        settings = load_settings(ctx.obj.get('config_path'), overrides={**ctx.obj['overrides'], 'region': region})
        result = secrets.verify(secret_id, region=settings.region, profile=settings.profile)
    except StrataError as e:
        _fail(e)
        return

    if not result.exists:
        click.echo(f"❌ Secret {secret_id} does not exist")
        sys.exit(1)
    if not result.configured:
        click.echo(f"⚠️  Secret {secret_id} still holds the deploy-time placeholder")
        sys.exit(1)
    click.echo(click.style(f"✅ Secret {secret_id} is configured ({result.length} characters)", fg='green'))


if __name__ == '__main__':
    main()
