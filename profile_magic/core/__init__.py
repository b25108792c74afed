"""Domain values shared by every layer: results, validation, presets.

WHY: The pipeline, the dispatcher and the Block Kit builders exchange
results and failures. Keeping those types free of Slack and HTTP
imports lets each layer be tested on its own.

RULES:
- No Slack, httpx or FastAPI imports in this package
"""
