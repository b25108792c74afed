"""Slack-facing layer: Web API helpers, processing handles, Block Kit, dispatch."""
