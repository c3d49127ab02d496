from __future__ import annotations

import sys
from pathlib import Path


def pytest_configure() -> None:
    """
    Allow running `pytest sentinel_stream/tests` directly.

    Without an editable install the repository root may not be on sys.path,
    in which case `import sentinel_stream` fails during collection.
    """

    repo_root = Path(__file__).resolve().parents[2]
    sys.path.insert(0, str(repo_root))
