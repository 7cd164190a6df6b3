"""Allow ``python -m chunkdl``."""

from __future__ import annotations

from chunkdl.cli.main import main

if __name__ == "__main__":
    main()
