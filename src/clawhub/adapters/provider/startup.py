"""Startup script and environment for the agent compute unit.

The script runs before the agent gateway: it writes AI credentials where the
agent reads them, logs the GitHub CLI in when a token is present, selects the
model, enables channels, then execs the gateway.
"""

import shlex

from clawhub.core.domain import AIProvider
from clawhub.core.interfaces import CreateInstanceConfig

AI_KEY_ENV: dict[AIProvider, str] = {
    AIProvider.OPENAI: "OPENAI_API_KEY",
    AIProvider.ANTHROPIC: "ANTHROPIC_API_KEY",
    AIProvider.GOOGLE: "GOOGLE_API_KEY",
}

_HEADER = """\
echo "=== clawhub agent initialization ==="
mkdir -p ~/.openclaw/workspace"""

# Unquoted heredoc: variables expand inside the compute unit
_CREDENTIALS = """\
cat > ~/.openclaw/.env << CREDEOF
ANTHROPIC_API_KEY=$ANTHROPIC_API_KEY
OPENAI_API_KEY=$OPENAI_API_KEY
GOOGLE_API_KEY=$GOOGLE_API_KEY
CREDEOF
echo "AI credentials written to ~/.openclaw/.env\""""

_GITHUB_LOGIN = """\
if [ -n "$GITHUB_TOKEN" ]; then
  echo "$GITHUB_TOKEN" | gh auth login --with-token 2>/dev/null \\
    && echo "GitHub CLI authenticated" || echo "GitHub CLI auth failed"
fi"""

_TELEGRAM = """\
node openclaw.mjs config set channels.telegram.enabled true 2>/dev/null || true
node openclaw.mjs config set channels.telegram.dmPolicy open 2>/dev/null || true
node openclaw.mjs config set 'channels.telegram.allowFrom' '["*"]' 2>/dev/null || true
node openclaw.mjs config set plugins.entries.telegram.enabled true 2>/dev/null || true"""

_GATEWAY = """\
echo "Starting agent gateway..."
exec node openclaw.mjs gateway"""


def build_environment(config: CreateInstanceConfig) -> dict[str, str]:
    """Environment for the compute unit. Only the resolved family's key is set."""
    env = {
        AI_KEY_ENV[config.ai_provider]: config.ai_api_key,
        "AI_MODEL": config.ai_model,
        "AI_PROVIDER": config.ai_provider.value,
    }
    if config.bot_token:
        env["TELEGRAM_BOT_TOKEN"] = config.bot_token
    if config.github_token:
        env["GITHUB_TOKEN"] = config.github_token
    return env


def build_startup_script(config: CreateInstanceConfig) -> str:
    model_ref = shlex.quote(f"{config.ai_provider.value}/{config.ai_model}")
    sections = [
        _HEADER,
        _CREDENTIALS,
        _GITHUB_LOGIN,
        f"node openclaw.mjs models set {model_ref} 2>/dev/null || true\n"
        f"echo \"AI model set to \"{model_ref}",
        "node openclaw.mjs config set gateway.mode local 2>/dev/null || true",
    ]
    if config.bot_token:
        sections.append(_TELEGRAM)
    sections.append(_GATEWAY)
    return "\n\n".join(sections)
