"""Slack delivery of broadcast watch events.

WHY: Followers of a broadcast want to know when it goes live and which
keywords came up, without watching logs.

HOW: SlackNotifier posts Block Kit messages built in messages.py through a
slack-bolt App client and uploads the captured audio with files_upload_v2.

RULES:
- Requires SLACK_BOT_TOKEN and SLACK_CHANNEL_ID
- Notifier calls are blocking; callers run them off the event loop
"""
