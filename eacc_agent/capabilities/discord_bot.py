"""Discord bot builder: the worker capability shipped with the agent."""

from __future__ import annotations

import logging
import textwrap
from dataclasses import dataclass, field
from importlib import resources
from typing import Dict, List, Optional, Sequence, Tuple

from ..ledger.models import Job

_LOGGER = logging.getLogger(__name__)

TEMPLATE_PACKAGE = "eacc_agent.capabilities"
TEMPLATE_DIR = "templates/discord_bot"

DISCORD_KEYWORDS: Tuple[str, ...] = (
    "discord bot",
    "discord.js",
    "discord server",
    "discord channel",
    "discord automation",
    "chatbot for discord",
    "slash commands",
    "discord integration",
)
TAG_KEYWORDS: Tuple[str, ...] = ("discord", "bot")

HIGH_COMPLEXITY: Tuple[str, ...] = (
    "database",
    "oauth",
    "authentication",
    "dashboard",
    "web interface",
    "voice",
    "music",
    "streaming",
    "ai",
    "machine learning",
    "nlp",
    "natural language",
    "payment",
    "analytics",
    "complex permissions",
)
MEDIUM_COMPLEXITY: Tuple[str, ...] = (
    "api integration",
    "scheduled tasks",
    "notifications",
    "user management",
    "role management",
    "moderation",
    "custom embeds",
    "reaction roles",
    "slash commands",
)

ESTIMATES: Dict[str, str] = {"high": "3-4 days", "medium": "1-2 days", "low": "24 hours"}

FEATURE_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "command handling": ("command", "commands", "/help", "/start", "slash command"),
    "message handling": ("message", "reply", "send message", "respond to messages"),
    "role management": ("role", "assign role", "role assignment", "reaction role"),
    "moderation": ("moderation", "ban", "kick", "mute", "timeout"),
    "scheduling": ("schedule", "timer", "reminder", "periodic", "cron"),
    "embeds": ("embed", "rich message", "formatted message"),
    "api integration": ("api", "integration", "connect", "external service"),
    "database": ("database", "storage", "save", "persist"),
    "web dashboard": ("dashboard", "web interface", "admin panel"),
}

# Features that come with a code snippet; the rest are documented only.
FEATURE_SNIPPETS: Dict[str, str] = {
    "command handling": "command_handling.js",
    "role management": "role_management.js",
    "moderation": "moderation.js",
}

FEATURE_COMMANDS: Dict[str, List[str]] = {
    "role management": [
        "`/role add [user] [role]` - Add a role to a user",
        "`/role remove [user] [role]` - Remove a role from a user",
    ],
    "moderation": [
        "`/kick [user] [reason]` - Kick a user",
        "`/ban [user] [reason]` - Ban a user",
        "`/timeout [user] [minutes] [reason]` - Timeout a user for the given minutes",
    ],
}


def _contains_any(text: str, keywords: Sequence[str]) -> bool:
    lowered = text.lower()
    return any(keyword in lowered for keyword in keywords)


def load_template(name: str) -> str:
    return resources.files(TEMPLATE_PACKAGE).joinpath(f"{TEMPLATE_DIR}/{name}").read_text(encoding="utf-8")


@dataclass
class BotRequirements:
    description: str
    features: List[str] = field(default_factory=list)


@dataclass
class DiscordBotResult:
    bot_code: str
    documentation: str
    deployment_instructions: str
    requirements: BotRequirements


class DiscordBotCapability:
    """Builds a discord.js bot from a free-text job description."""

    name = "discord-bot"
    description = "Creates custom Discord bots based on requirements"
    tags = ("discord", "bot", "automation", "chatbot")

    def __init__(
        self,
        keywords: Optional[Sequence[str]] = None,
        template: Optional[str] = None,
    ) -> None:
        self.keywords = tuple(k.lower() for k in (keywords or DISCORD_KEYWORDS))
        self._template = template

    # Matching ----------------------------------------------------------------
    def matches(self, job: Job, content: str) -> bool:
        if _contains_any(job.title, self.keywords):
            return True
        if any(_contains_any(tag, TAG_KEYWORDS) for tag in job.tags):
            return True
        return bool(content) and _contains_any(content, self.keywords)

    def assess_complexity(self, job: Job, content: str) -> str:
        text = f"{job.title}\n{content or ''}"
        if _contains_any(text, HIGH_COMPLEXITY):
            return "high"
        if _contains_any(text, MEDIUM_COMPLEXITY):
            return "medium"
        return "low"

    def estimate_completion_time(self, job: Job, content: str) -> str:
        return ESTIMATES[self.assess_complexity(job, content)]

    def identify_features(self, content: str) -> List[str]:
        return [feature for feature, keywords in FEATURE_KEYWORDS.items() if _contains_any(content or "", keywords)]

    # Application -------------------------------------------------------------
    def build_application_message(self, job: Job, content: str) -> str:
        complexity = self.assess_complexity(job, content)
        estimate = self.estimate_completion_time(job, content)
        return textwrap.dedent(
            f"""\
            Hello! I'm a specialized agent for building Discord bots.

            I've read the requirements for "{job.title}" and would be glad to build this bot.
            I estimate a {complexity} complexity project that I can deliver within {estimate}.

            My approach:
            1. Custom code written against your requirements
            2. Every requested command and feature implemented
            3. Integration with the Discord API and any other required services
            4. Documentation and deployment instructions
            5. Support for questions after delivery

            Features I can implement include slash commands, message handling, role and
            channel management, moderation, scheduled events, rich embeds, reaction roles
            and external API integrations.

            Would you like me to proceed?
            """
        )

    # Execution ---------------------------------------------------------------
    def extract_requirements(self, content: str) -> BotRequirements:
        return BotRequirements(description=content or "", features=self.identify_features(content))

    def generate_bot_code(self, requirements: BotRequirements) -> str:
        code = self._template if self._template is not None else load_template("bot.js")
        for feature in requirements.features:
            code = self._add_feature(code, feature)
        return code

    def _add_feature(self, code: str, feature: str) -> str:
        snippet_name = FEATURE_SNIPPETS.get(feature)
        if snippet_name is None:
            return code
        snippet = load_template(snippet_name).rstrip() + "\n\n"
        marker = code.rfind("client.login")
        if marker == -1:
            return code.rstrip() + "\n\n" + snippet
        return code[:marker] + snippet + code[marker:]

    def generate_commands_documentation(self, features: Sequence[str]) -> str:
        sections = [
            "### Basic Commands",
            "- `/ping` - Check that the bot is running",
            "- `/help` - Show help information",
        ]
        if "command handling" in features:
            sections.append("- `/info` - Get information about the bot")
            sections.append("- `/settings [setting]` - Adjust bot settings")
        for feature, commands in FEATURE_COMMANDS.items():
            if feature in features:
                sections.append("")
                sections.append(f"### {feature.title()}")
                sections.extend(f"- {line}" for line in commands)
        return "\n".join(sections)

    def generate_documentation(self, requirements: BotRequirements) -> str:
        features = "\n".join(f"- {feature}" for feature in requirements.features) or "- core commands"
        return "\n".join(
            [
                "# Discord Bot Documentation",
                "",
                "## Overview",
                "Custom Discord bot built from your requirements. Implemented features:",
                features,
                "",
                "## Installation",
                "1. Install Node.js 16 or newer",
                "2. Install dependencies: `npm install discord.js dotenv`",
                "3. Create a `.env` file containing `DISCORD_TOKEN=<your bot token>`",
                "4. Start the bot: `node bot.js`",
                "",
                "## Discord Application Setup",
                "1. Create an application in the Discord Developer Portal",
                "2. Add a bot user and copy its token into `.env`",
                "3. Enable the Message Content and Server Members privileged intents",
                "4. Generate an invite URL with the `bot` and `applications.commands` scopes",
                "5. Invite the bot to your server",
                "",
                "## Commands",
                self.generate_commands_documentation(requirements.features),
            ]
        )

    def generate_deployment_instructions(self) -> str:
        return "\n".join(
            [
                "# Deployment Instructions",
                "",
                "## Local",
                "1. `npm install discord.js dotenv`",
                "2. Put `DISCORD_TOKEN` in `.env`",
                "3. `node bot.js`",
                "",
                "## VPS with PM2",
                "1. Upload the code and install dependencies",
                "2. `npm install -g pm2`",
                '3. `pm2 start bot.js --name "discord-bot"`',
                "4. `pm2 startup` and `pm2 save` to start on boot",
                "",
                "## Heroku",
                "1. Add `DISCORD_TOKEN` as a config var",
                "2. Add a `Procfile` containing `worker: node bot.js`",
                "3. Deploy and enable the worker dyno",
                "",
                "## Railway",
                "1. Connect the repository and add `DISCORD_TOKEN` as a variable",
                "",
                "Global slash commands can take up to an hour to appear after the first start.",
            ]
        )

    def execute(self, job: Job, content: str) -> DiscordBotResult:
        _LOGGER.info("Building Discord bot for job %s", job.id, extra={"job_id": job.id})
        requirements = self.extract_requirements(content)
        return DiscordBotResult(
            bot_code=self.generate_bot_code(requirements),
            documentation=self.generate_documentation(requirements),
            deployment_instructions=self.generate_deployment_instructions(),
            requirements=requirements,
        )

    def package_result(self, job: Job, content: str, result: DiscordBotResult) -> str:
        return "\n".join(
            [
                "# Discord Bot - Complete Solution",
                "",
                f"Delivery for job #{job.id}: {job.title}",
                "",
                "## Bot Code",
                "```javascript",
                result.bot_code.rstrip(),
                "```",
                "",
                result.documentation,
                "",
                result.deployment_instructions,
                "",
                "## Next Steps",
                "Follow the instructions above and reply on this job with any questions or change requests.",
            ]
        )


__all__ = [
    "BotRequirements",
    "DISCORD_KEYWORDS",
    "DiscordBotCapability",
    "DiscordBotResult",
    "load_template",
]
