"""Allow ``python -m taskgraph_static``."""

from .main import main

if __name__ == "__main__":
    raise SystemExit(main())
