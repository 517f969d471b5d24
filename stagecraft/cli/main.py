"""Click-based CLI for stagecraft."""

import logging
import signal
import sys
from pathlib import Path

import click

from stagecraft import __version__
from stagecraft.config import CONFIG_FILENAME, BuildConfig
from stagecraft.exceptions import BuildCancelled, ManifestError, StagecraftError
from stagecraft.log import logger, set_loggers_level

logger = logger.getChild(__name__)


class StagecraftContext:
    """Context object passed to all commands."""

    def __init__(self, config_path: Path | None = None, quiet: int = 0, verbose: int = 0):
        self.config_path = config_path
        self.quiet = quiet
        self.verbose = verbose

    def load_config(self, manifest: Path | None = None) -> BuildConfig:
        path = self.config_path
        if path is None:
            base = manifest.resolve().parent if manifest is not None else Path.cwd()
            path = base / CONFIG_FILENAME
        config = BuildConfig.load(path)
        config.verbose = self.verbose > 0
        return config


pass_context = click.make_pass_decorator(StagecraftContext, ensure=True)


@click.group()
@click.option("-c", "--config", "config_path", type=click.Path(path_type=Path), help="Path to stagecraft.yaml.")
@click.option("-q", "--quiet", count=True, help="Be quiet.")
@click.option("-v", "--verbose", count=True, help="Be verbose.")
@click.version_option(__version__, "-V", "--version", prog_name="stagecraft")
@click.pass_context
def cli(ctx, config_path: Path | None, quiet: int, verbose: int):
    """stagecraft - declarative multi-stage image builds.

    Stages run in isolated filesystems, hand artifacts to later stages by
    reference, and the final image is validated before it is committed.
    """
    ctx.obj = StagecraftContext(config_path=config_path, quiet=quiet, verbose=verbose)

    level = None
    if quiet:
        level = logging.CRITICAL
    elif verbose == 1:
        level = logging.DEBUG
    elif verbose > 1:
        level = logging.TRACE  # type: ignore[attr-defined]

    if level is not None:
        ctx.with_resource(set_loggers_level(level))


def _load(manifest: Path, config: BuildConfig):
    from stagecraft.run.parser import load_manifest

    return load_manifest(manifest, allow_unpinned=config.allow_unpinned)


@cli.command("build")
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--no-cache", is_flag=True, help="Don't read or write the shared package cache.")
@click.option("--stage", "target", metavar="NAME", help="Build up to this stage and commit it.")
@click.option("-o", "--output-dir", type=click.Path(file_okay=False, path_type=Path), help="Where to commit the image.")
@click.option("--images", "images_dir", type=click.Path(file_okay=False, path_type=Path), help="Image store for base images.")
@click.option("--context", "context_dir", type=click.Path(exists=True, file_okay=False, path_type=Path), help="Build context directory.")
@click.option("--repo", "repositories", multiple=True, type=click.Path(exists=True, dir_okay=False, path_type=Path), help="Package repository index (repeatable).")
@click.option("--hook", type=click.Path(exists=True, dir_okay=False, path_type=Path), help="Post-build hook executable.")
@click.option("--name", "image_name", help="Name of the committed image.")
@click.option("--allow-unpinned", is_flag=True, help="Accept base images and packages without digests.")
@click.option("--register", is_flag=True, help="Also store the result in the image store.")
@click.option("-j", "--jobs", type=int, default=None, help="Parallel downloads per install step.")
@click.option("-n", "--dry-run", is_flag=True, help="Show the build plan without running it.")
@pass_context
def build_cmd(
    ctx: StagecraftContext,
    manifest: Path,
    no_cache: bool,
    target: str | None,
    output_dir: Path | None,
    images_dir: Path | None,
    context_dir: Path | None,
    repositories: tuple[Path, ...],
    hook: Path | None,
    image_name: str | None,
    allow_unpinned: bool,
    register: bool,
    jobs: int | None,
    dry_run: bool,
):
    """Build MANIFEST and commit the final image.

    Examples:

        \b
        # Build the last stage of the manifest
        stagecraft build image.yaml

        \b
        # Only build the builder stage, without the shared package cache
        stagecraft build image.yaml --stage builder --no-cache
    """
    from stagecraft.run.build import Build

    config = ctx.load_config(manifest)
    config.update(
        output_dir=output_dir,
        images_dir=images_dir,
        context_dir=context_dir,
        allow_unpinned=allow_unpinned or None,
        register=register or None,
        max_workers=jobs,
    )
    if repositories:
        config.repositories = list(config.repositories) + list(repositories)
    if no_cache:
        config.use_cache = False
    if dry_run:
        config.dry_run = True

    parsed = _load(manifest, config)
    if hook is not None:
        parsed.hook = str(hook.resolve())

    run = Build(parsed, config=config, target=target, image_name=image_name)
    if config.dry_run:
        for line in run.plan():
            click.echo(line)
        return

    def _cancel(signum, frame):
        run.cancel.cancel()

    previous = signal.signal(signal.SIGTERM, _cancel)
    try:
        result = run.run()
    finally:
        signal.signal(signal.SIGTERM, previous)

    click.echo(f"{result.image} {result.digest}")
    click.echo(str(result.image_dir), err=True)


@cli.command("plan")
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--stage", "target", metavar="NAME", help="Plan up to this stage.")
@pass_context
def plan_cmd(ctx: StagecraftContext, manifest: Path, target: str | None):
    """Print the stage order and instructions of MANIFEST."""
    from stagecraft.run.build import Build

    config = ctx.load_config(manifest)
    for line in Build(_load(manifest, config), config=config, target=target).plan():
        click.echo(line)


@cli.group("images")
def images_group():
    """Manage the local image store."""


@images_group.command("list")
@click.option("--images", "images_dir", type=click.Path(file_okay=False, path_type=Path), help="Image store directory.")
@pass_context
def images_list(ctx: StagecraftContext, images_dir: Path | None):
    """List images and their digests."""
    from stagecraft.run.images import ImageStore

    config = ctx.load_config().update(images_dir=images_dir)
    for meta in ImageStore(config.images_dir).list():
        click.echo(f"{meta['name']}\t{meta.get('digest', '-')}")


@images_group.command("import")
@click.argument("name")
@click.argument("rootfs", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--images", "images_dir", type=click.Path(file_okay=False, path_type=Path), help="Image store directory.")
@pass_context
def images_import(ctx: StagecraftContext, name: str, rootfs: Path, images_dir: Path | None):
    """Import directory ROOTFS into the image store as NAME."""
    from stagecraft.run.images import ImageStore

    config = ctx.load_config().update(images_dir=images_dir)
    ref = ImageStore(config.images_dir).store_image(name, rootfs, created_from=str(rootfs))
    click.echo(f"{ref.name}@{ref.digest}")


def main(argv=None):
    """Main entry point. Returns a process exit code."""
    try:
        cli(argv, standalone_mode=False)
        return 0
    except click.ClickException as e:
        e.show()
        return e.exit_code
    except click.Abort:
        return 1
    except FileNotFoundError as e:
        click.echo(f"Error: {e}", err=True)
        return ManifestError.exit_code
    except StagecraftError as e:
        logger.debug("", exc_info=True)
        click.echo(f"Error: {e}", err=True)
        return e.exit_code
    except KeyboardInterrupt:
        click.echo("\nInterrupted", err=True)
        return BuildCancelled.exit_code
    except Exception:
        logger.exception("unexpected error")
        return 255


if __name__ == "__main__":
    sys.exit(main())
