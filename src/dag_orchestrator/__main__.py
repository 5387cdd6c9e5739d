"""Module execution entrypoint for ``python -m dag_orchestrator``."""

from dag_orchestrator.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
