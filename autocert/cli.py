"""Command line entry point: issue certificates, run the server, inspect results."""
import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

import click
from fastapi import FastAPI, Request
from uvicorn.importer import ImportFromStringError, import_from_string

from . import __version__
from .acme_client import LETSENCRYPT_STAGING, KeyType
from .cert_manager import FileCertificateManager
from .challenges import ChallengeStore
from .domains import DomainStatus, DomainStore, MemoryDomainStore
from .errors import AutoCertError, ConfigurationError
from .generator import Generator
from .log import configure_logging, set_log_level
from .server import AutoCertConfig, AutoCertServer
from .settings import AutoCertSettings, load_settings
from .storage import CertificatePaths, parse_certificate


logger = logging.getLogger(__name__)


@click.group()
@click.version_option(version=__version__, prog_name="autocert")
@click.option("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR.")
@click.option(
    "-c", "--config", "config_path",
    default=None,
    type=click.Path(dir_okay=False, path_type=Path),
    help="Settings file (default: $AUTOCERT_CONFIG_DIR/autocert.json).",
)
@click.pass_context
def cli(ctx: click.Context, log_level: Optional[str], config_path: Optional[Path]) -> None:
    """autocert: automatic TLS certificates for multi-tenant HTTP services."""
    try:
        settings = load_settings(config_path)
    except ValueError as e:
        raise click.UsageError(f"invalid settings: {e}") from e
    configure_logging(settings.log_level)
    if log_level:
        try:
            set_log_level(log_level)
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint="--log-level") from e
    ctx.obj = settings


@cli.command()
@click.option("-d", "--domain", "domains", multiple=True, required=True, help="Domain to include; repeatable.")
@click.option("--email", default=None, help="ACME account contact email.")
@click.option("-o", "--output-dir", default=None, help="Directory for the certificate files.")
@click.option("--staging", is_flag=True, help="Use the Let's Encrypt staging directory.")
@click.option("--ca-url", default=None, help="ACME directory URL.")
@click.option("--http01-address", default=":80", show_default=True, help="Bind address of the http-01 responder.")
@click.option("--proxy-header", default=None, help="Header carrying the original host when proxied.")
@click.option(
    "--key-type",
    type=click.Choice([key_type.value for key_type in KeyType]),
    default=None,
    help="Certificate key algorithm.",
)
@click.option("--no-bundle", is_flag=True, help="Write the leaf certificate without the issuer chain.")
@click.option(
    "--challenge-dir",
    default=None,
    type=click.Path(file_okay=False, path_type=Path),
    help="Publish tokens here for a running server instead of binding port 80.",
)
@click.pass_obj
def generate(
    settings: AutoCertSettings,
    domains: tuple[str, ...],
    email: Optional[str],
    output_dir: Optional[str],
    staging: bool,
    ca_url: Optional[str],
    http01_address: str,
    proxy_header: Optional[str],
    key_type: Optional[str],
    no_bundle: bool,
    challenge_dir: Optional[Path],
) -> None:
    """Issue one certificate covering every DOMAIN and write it to disk."""
    if staging:
        directory_url = LETSENCRYPT_STAGING
    else:
        directory_url = ca_url or settings.directory_url

    try:
        generator = Generator.from_options(
            domains=list(domains),
            email=email if email is not None else settings.email,
            output_dir=output_dir if output_dir is not None else settings.cert_dir,
            ca_directory_url=directory_url,
            http01_address=http01_address,
            http01_proxy_header=proxy_header if proxy_header is not None else settings.http01_proxy_header,
            certificate_key_type=key_type or settings.key_type,
            bundle=not no_bundle,
            http01_provider=ChallengeStore(challenge_dir) if challenge_dir else None,
        )
    except ConfigurationError as e:
        raise click.UsageError(str(e)) from e

    try:
        result = asyncio.run(generator.generate())
    except AutoCertError as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"certificate: {result.certificate_path}")
    click.echo(f"private key: {result.private_key_path}")
    if result.issuer_certificate_path:
        click.echo(f"issuer:      {result.issuer_certificate_path}")


@cli.command()
@click.argument("domain")
@click.option("--cert-dir", default=None, help="Certificate directory (default from settings).")
@click.pass_obj
def inspect(settings: AutoCertSettings, domain: str, cert_dir: Optional[str]) -> None:
    """Show subject, issuer, names and validity of DOMAIN's certificate."""
    paths = CertificatePaths.for_domain(cert_dir or settings.cert_dir, domain)
    try:
        info = parse_certificate(paths.certificate.read_bytes())
    except FileNotFoundError:
        raise click.ClickException(f"no certificate for {domain} in {paths.certificate.parent}") from None
    except ValueError as e:
        raise click.ClickException(f"cannot parse {paths.certificate}: {e}") from e

    click.echo(f"file:       {paths.certificate}")
    click.echo(f"subject:    {info.subject}")
    click.echo(f"issuer:     {info.issuer}")
    click.echo(f"serial:     {info.serial_number}")
    click.echo(f"names:      {', '.join(info.domains)}")
    click.echo(f"not before: {info.not_before.isoformat()}")
    click.echo(f"not after:  {info.not_after.isoformat()}")
    click.echo(f"expired:    {'yes' if info.is_expired() else 'no'} ({info.days_until_expiry()} days left)")


@cli.command()
@click.option(
    "-d", "--domain", "domains",
    multiple=True,
    help="DOMAIN or DOMAIN=TENANT to register; repeatable.",
)
@click.option("--app", "app_path", default=None, help="ASGI application as module:attribute.")
@click.option("--issue", is_flag=True, help="Issue missing certificates in the background.")
@click.pass_obj
def serve(settings: AutoCertSettings, domains: tuple[str, ...], app_path: Optional[str], issue: bool) -> None:
    """Run the HTTP and HTTPS listeners for the registered domains."""
    if issue and not settings.email:
        raise click.UsageError("--issue requires an ACME email in the settings")

    app = None
    if app_path:
        try:
            app = import_from_string(app_path)
        except ImportFromStringError as e:
            raise click.BadParameter(str(e), param_hint="--app") from e

    try:
        asyncio.run(_serve(settings, domains, app, issue))
    except ConfigurationError as e:
        raise click.UsageError(str(e)) from e
    except AutoCertError as e:
        raise click.ClickException(str(e)) from e


def register_domains(store: MemoryDomainStore, manager: FileCertificateManager, entries) -> list[str]:
    """
    Register DOMAIN[=TENANT] entries.

    Domains with a certificate on disk start active, the rest provisioning.

    Returns:
        Domains that still need a certificate.
    """
    pending = []
    for entry in entries:
        domain, _, tenant = entry.partition("=")
        domain = domain.strip().lower()
        if not domain:
            raise ConfigurationError("domain entries cannot be empty")
        if manager.exists(domain):
            store.register(domain, tenant.strip(), DomainStatus.ACTIVE)
        else:
            store.register(domain, tenant.strip(), DomainStatus.PROVISIONING)
            pending.append(domain)
    return pending


async def provision_domain(manager: FileCertificateManager, store: MemoryDomainStore, domain: str) -> bool:
    """
    Issue a certificate for one domain and record the outcome in the store.

    The manager publishes challenges through its shared store, so the running
    server answers them on port 80.
    """
    try:
        await manager.generate(domain)
    except AutoCertError as e:
        logger.error("[AUTOCERT] Provisioning %s failed: %s", domain, e)
        store.set_status(domain, DomainStatus.FAILED, str(e))
        return False

    store.set_status(domain, DomainStatus.ACTIVE)
    return True


def create_default_app(store: DomainStore) -> FastAPI:
    """Placeholder upstream that reports which tenant a request resolved to."""
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

    @app.get("/{path:path}", include_in_schema=False)
    async def whoami(request: Request, path: str) -> dict:
        host = request.url.hostname or ""
        info = await store.get_domain(host)
        return {
            "host": host,
            "tenant": info.tenant_id if info else None,
            "path": "/" + path,
        }

    return app


async def _serve(settings: AutoCertSettings, entries, app, issue: bool) -> None:
    challenges = ChallengeStore(settings.challenge_dir)
    manager = FileCertificateManager(
        settings.cert_dir,
        preset=settings.tls_preset,
        challenges=challenges,
        email=settings.email,
        ca_directory_url=settings.directory_url,
        key_type=settings.key_type,
        max_retries=settings.max_retries,
        retry_backoff=settings.retry_backoff,
    )
    store = MemoryDomainStore()
    pending = register_domains(store, manager, entries)

    server = AutoCertServer(manager, store, config=AutoCertConfig.from_settings(settings))
    if app is None:
        app = create_default_app(store)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    provisioning = []
    if issue:
        provisioning = [
            asyncio.create_task(provision_domain(manager, store, domain))
            for domain in pending
        ]

    try:
        await server.run(app, shutdown_event=stop)
    finally:
        for task in provisioning:
            task.cancel()
        await asyncio.gather(*provisioning, return_exceptions=True)
