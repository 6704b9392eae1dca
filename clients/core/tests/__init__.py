"""Unit tests for the conversation state engine."""

import logging

logging.getLogger("asyncio").setLevel(logging.ERROR)
