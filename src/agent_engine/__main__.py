"""Allow running as ``python -m agent_engine``."""

from agent_engine.ui.cli import main

if __name__ == "__main__":
    main()
