"""Package entry point for ``python -m profile_magic``.

WHY: The bot and its file host run as one process; ``-m`` is the
documented way to start it.

HOW: Delegates to slack.bot.main(), which validates configuration,
binds the HTTP listener, and starts the Socket Mode handler.
"""

from profile_magic.slack.bot import main

if __name__ == "__main__":
    main()
