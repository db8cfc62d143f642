#!/usr/bin/env python
"""Entry point for the outreach sequencer CLI."""

# Load .env file before anything else
from dotenv import load_dotenv
load_dotenv()

from sequencer.core.cli import main

if __name__ == "__main__":
    main()
