"""Allow ``python -m ciflow``."""

from ciflow.cli import app

app(prog_name="ciflow")
