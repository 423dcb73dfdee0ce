"""Allow ``python -m kado_proxy``."""

from kado_proxy.main import cli

cli()
