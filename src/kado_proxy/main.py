"""Command-line entry point: serve the proxy over HTTPS."""

import logging
import ssl

import click
import uvicorn
from dotenv import load_dotenv

from kado_proxy.api.app import create_app
from kado_proxy.config import Settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for the process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )


@click.command()
@click.option("--cert", "cert_file", type=click.Path(dir_okay=False), help="Path to TLS certificate file")
@click.option("--key", "key_file", type=click.Path(dir_okay=False), help="Path to TLS key file")
@click.option("--port", "-p", type=int, help="Port to run the server on [default: 8443]")
@click.option("--host", help="Interface to bind [default: 0.0.0.0]")
@click.option("--log-level", help="Logging level [default: INFO]")
def cli(
    cert_file: str | None,
    key_file: str | None,
    port: int | None,
    host: str | None,
    log_level: str | None,
) -> None:
    """kado-proxy: rate-limit-aware authenticating proxy for the GitHub API."""
    load_dotenv()

    overrides = {
        "tls_cert_file": cert_file,
        "tls_key_file": key_file,
        "port": port,
        "host": host,
        "log_level": log_level,
    }
    settings = Settings(**{k: v for k, v in overrides.items() if v is not None})

    if not settings.tls_cert_file or not settings.tls_key_file:
        raise click.UsageError("TLS certificate and key files are required")

    configure_logging(settings.log_level)

    logger.info(f"Starting kado-proxy HTTPS server on :{settings.port}")
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        ssl_certfile=settings.tls_cert_file,
        ssl_keyfile=settings.tls_key_file,
        ssl_version=ssl.PROTOCOL_TLS_SERVER,
        log_config=None,
    )


if __name__ == "__main__":
    cli()
