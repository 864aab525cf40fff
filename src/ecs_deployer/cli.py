# cli.py
import logging
import sys

import click

from ecs_deployer.orchestrator import DeploymentRunner, RunSummary
from ecs_deployer.progress import JsonLinesEmitter
from ecs_deployer.settings import get_settings

# Configure logging
logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO),
                        format=LOG_FORMAT, stream=sys.stderr, force=True)
    # boto is noisy at INFO
    for noisy in ('botocore', 'boto3', 'urllib3'):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def _finish(ctx: click.Context, summary: RunSummary) -> None:
    ctx.obj['emit'](summary.to_dict())
    ctx.exit(summary.exit_code)


def _runner(ctx: click.Context) -> DeploymentRunner:
    return DeploymentRunner(settings=get_settings(), progress=ctx.obj['emit'])


@click.group()
@click.option("--log-level",
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
              default=None,
              help="Override the configured log level")
@click.pass_context
def cli(ctx, log_level):
    """Deploy a container to ECS Fargate behind an Application Load Balancer"""
    ctx.ensure_object(dict)
    configure_logging(log_level or get_settings().log_level)
    ctx.obj.setdefault('emit', JsonLinesEmitter())


@cli.command()
@click.argument("spec_file")
@click.option("--timeout", type=float, default=None,
              help="Seconds to wait for the service to converge")
@click.option("--no-wait", is_flag=True, help="Return once changes are applied")
@click.pass_context
def deploy(ctx, spec_file, timeout, no_wait):
    """Create or update everything SPEC_FILE declares"""
    summary = _runner(ctx).deploy(spec_file, wait=not no_wait, timeout=timeout)
    _finish(ctx, summary)


@cli.command()
@click.argument("spec_file")
@click.option("--timeout", type=float, default=None,
              help="Seconds to wait for the service to converge")
@click.option("--no-wait", is_flag=True, help="Return once changes are applied")
@click.pass_context
def update(ctx, spec_file, timeout, no_wait):
    """Roll an existing service to SPEC_FILE"""
    summary = _runner(ctx).update(spec_file, wait=not no_wait, timeout=timeout)
    _finish(ctx, summary)


@cli.command()
@click.argument("spec_file")
@click.pass_context
def plan(ctx, spec_file):
    """Show the operations deploy would run, without running them"""
    summary = _runner(ctx).plan(spec_file)
    _finish(ctx, summary)


@cli.command()
@click.argument("cluster")
@click.argument("service")
@click.pass_context
def status(ctx, cluster, service):
    """Show service health and the last recorded run"""
    summary = _runner(ctx).status(cluster, service)
    _finish(ctx, summary)


@cli.command()
@click.argument("cluster")
@click.argument("service")
@click.option("--delete-cluster", is_flag=True,
              help="Also delete the cluster when no other services run in it")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def teardown(ctx, cluster, service, delete_cluster, yes):
    """Delete SERVICE and its load balancer, listener, target group and task definitions"""
    if not yes:
        click.confirm(f"Delete service {service} in cluster {cluster} and its load balancer?",
                      abort=True, err=True)
    summary = _runner(ctx).teardown(cluster, service, delete_cluster=delete_cluster)
    _finish(ctx, summary)


@cli.command()
def show_config():
    """Show current configuration"""
    settings = get_settings()

    click.echo("Current Configuration:")
    click.echo(f"  Deployment Mode: {settings.deployment_mode}")
    click.echo(f"  AWS Region: {settings.aws_region}")
    click.echo(f"  AWS Endpoint: {settings.aws_endpoint_url}")
    click.echo(f"  State Directory: {settings.state_dir}")
    click.echo(f"  Retry: {settings.retry_policy()}")
    click.echo(f"  Max Parallel Operations: {settings.max_parallel_operations}")
    click.echo(f"  Poll Interval: {settings.poll_interval}s")
    click.echo(f"  Convergence Timeout: {settings.convergence_timeout}s")
    click.echo(f"  Verify Image: {settings.verify_image}")


if __name__ == "__main__":
    cli()
