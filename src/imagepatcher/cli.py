import logging
import os

import click
from rich.logging import RichHandler

from .constants import CLOUD_SERVICES, FALCON_API_HOSTS, PULL_POLICIES
from .core import ImagePatcher, PatcherError
from .errors_catalog import actionable_error
from .redaction import RedactingFilter
from .services.config_loader import ConfigLoader


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config:
        return config[key]
    return default


def _require(value, name, option, envvar):
    if value in (None, ""):
        raise click.ClickException(
            actionable_error("missing_option", name=name, option=option, envvar=envvar)
        )
    return value


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


@click.command()
@click.option("--region", envvar="AWS_REGION", help="AWS region of the ECR registries.")
@click.option("--account-id", envvar="AWS_ACCOUNT_ID", help="AWS account identifier.")
@click.option(
    "--source-repo",
    envvar="SOURCE_IMAGE_REPOSITORY",
    help="Source repository name, or a fully qualified repository URI.",
)
@click.option("--source-tag", envvar="SOURCE_IMAGE_TAG", help="Source image tag.")
@click.option(
    "--target-repo",
    envvar="TARGET_IMAGE_REPOSITORY",
    help="Target repository (default: the source repository).",
)
@click.option(
    "--target-tag",
    envvar="TARGET_IMAGE_TAG",
    help="Target image tag (default: '<source tag>-patched').",
)
@click.option(
    "--patcher-image",
    envvar="FALCON_IMAGE_URI",
    help="Fully qualified URI of the patcher (Falcon container sensor) image.",
)
@click.option("--cid", envvar="FALCON_CID", help="Falcon tenant identifier (CID).")
@click.option(
    "--platform",
    envvar="TARGET_PLATFORM",
    help="Target platform of the image, e.g. arm64 or linux/arm64.",
)
@click.option(
    "--pull-policy",
    envvar="IMAGE_PULL_POLICY",
    type=click.Choice(PULL_POLICIES),
    help="Image pull policy passed to the patch tool (default: IfNotPresent).",
)
@click.option(
    "--cloud-service",
    envvar="CLOUD_SERVICE",
    type=click.Choice(CLOUD_SERVICES),
    help="Deployment runtime of the patched image (default: ECS_FARGATE).",
)
@click.option("--falcon-client-id", envvar="FALCON_CLIENT_ID", help="Falcon API client id.")
@click.option(
    "--falcon-client-secret",
    envvar="FALCON_CLIENT_SECRET",
    help="Falcon API client secret. Prefer the environment variable.",
)
@click.option(
    "--falcon-cloud",
    envvar="FALCON_CLOUD",
    type=click.Choice(sorted(FALCON_API_HOSTS)),
    help="Falcon cloud region (default: us-1).",
)
@click.option(
    "--use-instance-role",
    is_flag=True,
    default=None,
    help="Use the ambient AWS role instead of requiring access keys in the environment.",
)
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help="Path to a YAML configuration file. Defaults to .imagepatcher.yml if present.",
)
@click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging")
@click.option("--log-file", type=click.Path(), help="Path to log file")
@click.option(
    "--output-dir",
    type=click.Path(),
    help="Directory for the run manifest and rendered descriptor (default: ./output).",
)
@click.option(
    "--step-timeout-minutes",
    type=int,
    default=None,
    help="Timeout for each step in minutes (default: 30).",
)
@click.option(
    "--retry-count",
    type=int,
    default=None,
    help="Retries for transient step failures (default: 0).",
)
@click.option(
    "--retry-backoff-seconds",
    type=float,
    default=None,
    help="Initial backoff between retries, doubled on each attempt (default: 2).",
)
@click.option(
    "--render-descriptor",
    is_flag=True,
    default=None,
    help="Render an ECS task definition referencing the published image.",
)
@click.option(
    "--descriptor-template",
    type=click.Path(),
    help="Custom task definition template with ${...} placeholders.",
)
@click.option(
    "--dry-run",
    is_flag=True,
    default=None,
    help="Print the run plan without executing any command.",
)
def main(
    region,
    account_id,
    source_repo,
    source_tag,
    target_repo,
    target_tag,
    patcher_image,
    cid,
    platform,
    pull_policy,
    cloud_service,
    falcon_client_id,
    falcon_client_secret,
    falcon_cloud,
    use_instance_role,
    config,
    verbose,
    log_file,
    output_dir,
    step_timeout_minutes,
    retry_count,
    retry_backoff_seconds,
    render_descriptor,
    descriptor_template,
    dry_run,
):
    """Patch a container image for a non-native platform and publish it."""
    logger = logging.getLogger("imagepatcher")

    try:
        config_loader = ConfigLoader()
        resolved_config = config
        if resolved_config is None:
            default_config_path = os.path.join(os.getcwd(), ".imagepatcher.yml")
            if os.path.exists(default_config_path):
                resolved_config = default_config_path

        config_values = config_loader.load(resolved_config)
    except PatcherError as exc:
        raise click.ClickException(str(exc)) from exc

    region = _require(_resolve_option(region, config_values, "region"), "region", "region", "AWS_REGION")
    account_id = _require(
        _resolve_option(account_id, config_values, "account_id"),
        "account_id",
        "account-id",
        "AWS_ACCOUNT_ID",
    )
    source_repo = _require(
        _resolve_option(source_repo, config_values, "source_repo"),
        "source_repo",
        "source-repo",
        "SOURCE_IMAGE_REPOSITORY",
    )
    source_tag = _require(
        _resolve_option(source_tag, config_values, "source_tag"),
        "source_tag",
        "source-tag",
        "SOURCE_IMAGE_TAG",
    )
    patcher_image = _require(
        _resolve_option(patcher_image, config_values, "patcher_image"),
        "patcher_image",
        "patcher-image",
        "FALCON_IMAGE_URI",
    )
    platform = _require(
        _resolve_option(platform, config_values, "platform"),
        "platform",
        "platform",
        "TARGET_PLATFORM",
    )
    cid = _require(cid, "cid", "cid", "FALCON_CID")
    target_repo = _resolve_option(target_repo, config_values, "target_repo")
    target_tag = _resolve_option(target_tag, config_values, "target_tag")
    pull_policy = _resolve_option(pull_policy, config_values, "pull_policy", default="IfNotPresent")
    cloud_service = _resolve_option(
        cloud_service, config_values, "cloud_service", default="ECS_FARGATE"
    )
    falcon_client_id = _resolve_option(falcon_client_id, config_values, "falcon_client_id")
    falcon_cloud = _resolve_option(falcon_cloud, config_values, "falcon_cloud", default="us-1")
    use_instance_role = bool(
        _resolve_option(use_instance_role, config_values, "use_instance_role", default=False)
    )
    verbose = bool(_resolve_option(verbose, config_values, "verbose", default=False))
    log_file = _resolve_option(log_file, config_values, "log_file")
    output_dir = _resolve_option(output_dir, config_values, "output_dir")
    step_timeout_minutes = int(
        _resolve_option(step_timeout_minutes, config_values, "step_timeout_minutes", default=30)
    )
    retry_count = int(_resolve_option(retry_count, config_values, "retry_count", default=0))
    retry_backoff_seconds = float(
        _resolve_option(
            retry_backoff_seconds,
            config_values,
            "retry_backoff_seconds",
            default=2.0,
        )
    )
    render_descriptor = bool(
        _resolve_option(render_descriptor, config_values, "render_descriptor", default=False)
    )
    descriptor_template = _resolve_option(
        descriptor_template, config_values, "descriptor_template"
    )
    dry_run = bool(_resolve_option(dry_run, config_values, "dry_run", default=False))

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    try:
        patcher = ImagePatcher(
            region=region,
            account_id=str(account_id),
            source_repo=source_repo,
            source_tag=str(source_tag),
            patcher_image=patcher_image,
            cid=cid,
            platform=platform,
            target_repo=target_repo,
            target_tag=target_tag,
            pull_policy=pull_policy,
            cloud_service=cloud_service,
            falcon_client_id=falcon_client_id,
            falcon_client_secret=falcon_client_secret,
            falcon_cloud=falcon_cloud,
            use_instance_role=use_instance_role,
            verbose=verbose,
            output_dir=output_dir,
            step_timeout_minutes=step_timeout_minutes,
            retry_count=retry_count,
            retry_backoff_seconds=retry_backoff_seconds,
            render_descriptor=render_descriptor,
            descriptor_template=descriptor_template,
            dry_run=dry_run,
        )
    except PatcherError as exc:
        raise click.ClickException(str(exc)) from exc

    redacting_filter = RedactingFilter(patcher.redactor)
    for handler in logging.getLogger().handlers:
        handler.addFilter(redacting_filter)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        file_handler.addFilter(redacting_filter)
        logger.addHandler(file_handler)

    raise SystemExit(patcher.run())


if __name__ == "__main__":
    main()
