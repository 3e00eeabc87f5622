import os
import shutil
import logging
import tempfile
import subprocess
from contextlib import contextmanager
from pathlib import Path

import click

logging.basicConfig(level=logging.WARNING)

KUBE_TMPDIR = Path(tempfile.gettempdir()) / ".kube"


def default_context(project, cluster, zone):
    """Name of the context gcloud writes for this cluster."""
    return f"gke_{project}_{zone}_{cluster}"


def original_kubeconfig_path():
    kubeconfig = os.environ.get("KUBECONFIG")
    if kubeconfig:
        return Path(kubeconfig)
    return Path.home() / ".kube" / "config"


def isolated_kubeconfig_path(tmpdir):
    return Path(tmpdir) / f"config.{os.geteuid()}.{os.getpid()}"


@contextmanager
def isolated_kubeconfig(tmpdir=None):
    """Yield a kubeconfig path private to this process, removed on exit.

    A file left behind by an earlier process that had the same pid is
    discarded first, otherwise gcloud would merge into it.
    """
    tmpdir = Path(tmpdir or KUBE_TMPDIR)
    tmpdir.mkdir(mode=0o700, parents=True, exist_ok=True)
    tmpdir.chmod(0o700)
    path = isolated_kubeconfig_path(tmpdir)
    path.unlink(missing_ok=True)
    logging.debug(f"Using isolated kubeconfig {path}")
    try:
        yield path
    finally:
        path.unlink(missing_ok=True)


def kubectl_env(kubeconfig):
    return dict(os.environ, KUBECONFIG=str(kubeconfig))


def list_contexts(kubeconfig):
    try:
        result = subprocess.run(
            ["kubectl", "config", "get-contexts", "-o", "name"],
            capture_output=True,
            text=True,
            check=True,
            env=kubectl_env(kubeconfig),
        )
    except subprocess.CalledProcessError as e:
        logging.warning(f"Failed to list contexts in {kubeconfig}: {e.stderr}")
        return []
    return result.stdout.splitlines()


def current_context(kubeconfig):
    result = subprocess.run(
        ["kubectl", "config", "current-context"],
        capture_output=True,
        text=True,
        env=kubectl_env(kubeconfig),
    )
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def use_context(kubeconfig, context):
    try:
        subprocess.run(
            ["kubectl", "config", "use-context", context],
            capture_output=True,
            text=True,
            check=True,
            env=kubectl_env(kubeconfig),
        )
    except subprocess.CalledProcessError as e:
        logging.error(f"Failed to switch to context {context}: {e.stderr}")
        raise
    logging.info(f"Switched to context {context}")


def fetch_credentials(project, cluster, zone, kubeconfig):
    logging.info(f"Fetching credentials for cluster {cluster} in {zone} ({project})")
    try:
        subprocess.run(
            [
                "gcloud", "container", "clusters", "get-credentials", cluster,
                "--zone", zone,
                "--project", project,
            ],
            check=True,
            env=kubectl_env(kubeconfig),
        )
    except subprocess.CalledProcessError as e:
        logging.error(f"Failed to fetch credentials for cluster {cluster}: exit code {e.returncode}")
        raise


def copy_private(src, dst):
    """Copy src to a new file dst that is only ever readable by its owner."""
    fd = os.open(dst, os.O_CREAT | os.O_WRONLY | os.O_EXCL, 0o600)
    with os.fdopen(fd, "wb") as fdst, open(src, "rb") as fsrc:
        shutil.copyfileobj(fsrc, fdst)


def prepare_kubeconfig(project, cluster, zone, context, kubeconfig, original):
    """Populate the isolated kubeconfig for the target cluster.

    Copies the original kubeconfig when it already holds the context,
    otherwise pulls fresh credentials from GKE into the isolated file.
    """
    if context and original.is_file() and context in list_contexts(original):
        logging.debug(f"Reusing context {context} from {original}")
        copy_private(original, kubeconfig)
        if current_context(kubeconfig) != context:
            use_context(kubeconfig, context)
    else:
        fetch_credentials(project, cluster, zone, kubeconfig)
        click.echo(err=True)
    return kubeconfig


def run_kubectl(args, kubeconfig):
    cmd = ["kubectl", *args]
    logging.debug(f"Running {' '.join(cmd)} with KUBECONFIG={kubeconfig}")
    returncode = subprocess.run(cmd, env=kubectl_env(kubeconfig)).returncode
    if returncode < 0:
        # killed by a signal, report it the way a shell does
        return 128 - returncode
    return returncode


@click.command(
    context_settings={
        "ignore_unknown_options": True,
        "allow_interspersed_args": False,
        "help_option_names": ["-h", "--help"],
    }
)
@click.option(
    "--context",
    envvar="GKE_CONTEXT",
    help="Context to reuse from the existing kubeconfig. "
    "Defaults to the name gcloud gives the cluster's context.",
)
@click.argument("project")
@click.argument("cluster")
@click.argument("zone")
@click.argument("kubectl_args", metavar="<kubectl_options>", nargs=-1, required=True, type=click.UNPROCESSED)
@click.pass_context
def main(ctx, context, project, cluster, zone, kubectl_args):
    """Run a kubectl command fixed to a GKE cluster.

    Generates an isolated kubeconfig for the lifetime of this command, so
    neither the global kubectl context nor other concurrently running scripts
    are affected. Running `kubectl config use-context` or
    `gcloud container clusters get-credentials` changes the global context and
    can divert long running scripts in other windows to the wrong cluster.

    If the context (--context or GKE_CONTEXT) exists in the current
    kubeconfig it is copied and reused, otherwise credentials are pulled
    from GKE. Set DEBUG to log every step.
    """
    if os.environ.get("DEBUG"):
        logging.getLogger().setLevel(logging.DEBUG)

    context = context or default_context(project, cluster, zone)

    try:
        with isolated_kubeconfig() as kubeconfig:
            prepare_kubeconfig(
                project, cluster, zone, context, kubeconfig, original_kubeconfig_path()
            )
            returncode = run_kubectl(kubectl_args, kubeconfig)
    except subprocess.CalledProcessError as e:
        ctx.exit(e.returncode)
    except FileNotFoundError as e:
        logging.error(f"Not found: {e.filename}")
        ctx.exit(127)
    except OSError as e:
        logging.error(str(e))
        ctx.exit(1)
    except KeyboardInterrupt:
        ctx.exit(130)

    ctx.exit(returncode)


if __name__ == "__main__":
    main()
