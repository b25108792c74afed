"""Profile Magic: AI profile photo edits delivered inside Slack.

WHY: Users want to restyle their Slack profile photo ("add sunglasses",
"cartoon me") without leaving Slack. The bot takes a prompt, sends the
current photo through a generative image model, shows the result with
approve/share/retry buttons, and sets the new photo on approval.

HOW: Four layers: storage (credentials, blobs, short-lived caches),
imaging (model adapter + generation pipeline), slack (processing handles,
payloads, Block Kit, action dispatch) and server (static file host +
OAuth callback). The bot and the file host run in one process.

RULES:
- A slash command is acked first; all generation runs in the background
- The user's profile is only touched after an explicit approval
- Generated images live in the blob host until the TTL sweep removes them
"""

__version__ = "0.1.0"
