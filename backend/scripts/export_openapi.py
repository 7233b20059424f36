"""
Write the HTTP API schema to openapi.yaml.

Usage:
    python -m scripts.export_openapi [output_path]
"""

import sys
from pathlib import Path

import yaml
from fastapi.openapi.utils import get_openapi

from dashchat.main import create_app


def main(output: str = "openapi.yaml") -> None:
    app = create_app()
    schema = get_openapi(title=app.title, version=app.version, routes=app.routes)
    Path(output).write_text(yaml.safe_dump(schema, sort_keys=False), encoding="utf-8")
    print(f"Wrote {output}")


if __name__ == "__main__":
    main(*sys.argv[1:2])
