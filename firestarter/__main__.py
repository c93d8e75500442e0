"""Allow ``python -m firestarter``."""

from firestarter.cli import main

raise SystemExit(main())
