"""Ingestion: backend adapters, normalization, and the adapter registry."""

from crossfeed.ingestion.discord_adapter import DiscordAdapter
from crossfeed.ingestion.github_adapter import GitHubAdapter
from crossfeed.ingestion.jira_adapter import JiraAdapter
from crossfeed.ingestion.registry import register_adapter
from crossfeed.ingestion.telegram_adapter import TelegramAdapter
from crossfeed.models import SourceKind

register_adapter(SourceKind.TELEGRAM, TelegramAdapter)
register_adapter(SourceKind.DISCORD, DiscordAdapter)
register_adapter(SourceKind.GITHUB, GitHubAdapter)
register_adapter(SourceKind.JIRA, JiraAdapter)
