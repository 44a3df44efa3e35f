"""Slash commands (/clear, /focus, /task, ...) and their registry.

Commands never reach into the agent by probing it at runtime. Each one is
handed a CommandContext whose fields are the exact capabilities the command
layer may use: conversation control, the session state, model selection and
display verbosity.
"""

import os
import threading
from dataclasses import dataclass
from typing import Callable, Protocol

from .errors import CommandError
from .state import SessionState

VALID_MODELS = (
    "anthropic/claude-3-5-sonnet-20241022",
    "anthropic/claude-3-5-haiku-20241022",
    "anthropic/claude-4-opus-20240229",
    "openai/gpt-4o",
    "openai/gpt-4o-mini",
    "openai/gpt-4-turbo",
    "google/gemini-pro-1.5",
    "meta-llama/llama-3.1-405b-instruct",
    "meta-llama/llama-3.1-70b-instruct",
    "meta-llama/llama-3.1-8b-instruct",
)


class ConversationControl(Protocol):
    def clear_conversation(self) -> None: ...

    def get_context_stats(self) -> str: ...


class ModelControl(Protocol):
    def get_current_model(self) -> str: ...

    def set_model(self, model: str) -> None: ...


class VerbosityControl(Protocol):
    def set_verbose(self, verbose: bool) -> None: ...

    def is_verbose(self) -> bool: ...


@dataclass
class CommandContext:
    conversation: ConversationControl
    session: SessionState
    model: ModelControl
    display: VerbosityControl
    registry: "CommandRegistry"


@dataclass
class CommandResult:
    output: str = ""
    exit: bool = False


Handler = Callable[[list[str], CommandContext], "CommandResult | str"]


@dataclass
class Command:
    name: str
    description: str
    usage: str
    handler: Handler
    category: str = "System Information"

    def run(self, args: list[str], ctx: CommandContext) -> CommandResult:
        result = self.handler(args, ctx)
        if isinstance(result, str):
            return CommandResult(output=result)
        return result


class CommandRegistry:
    """Name -> Command table. Registration and lookup are thread-safe;
    command execution runs outside the lock."""

    def __init__(self):
        self._commands: dict[str, Command] = {}
        self._lock = threading.Lock()

    def register(self, command: Command) -> None:
        with self._lock:
            self._commands[command.name] = command

    def get(self, name: str) -> Command | None:
        with self._lock:
            return self._commands.get(name)

    def execute(self, line: str, ctx: CommandContext) -> CommandResult | None:
        """Run a slash command. Returns None if line is not a command.

        Raises CommandError for empty or unknown commands and bad arguments.
        """
        if not line.startswith("/"):
            return None
        parts = line[1:].split()
        if not parts:
            raise CommandError("empty command")
        name, args = parts[0].lower(), parts[1:]
        command = self.get(name)
        if command is None:
            raise CommandError(f"unknown command: /{name}")
        return command.run(args, ctx)

    # Defined last: the name shadows the builtin for annotations below it.
    def list(self) -> "list[Command]":
        with self._lock:
            return [self._commands[name] for name in sorted(self._commands)]


# ---------------------------------------------------------------------------
# Built-in commands
# ---------------------------------------------------------------------------


def _no_args(name: str, args: list[str]) -> None:
    if args:
        raise CommandError(f"{name} command takes no arguments")


def _clear(args, ctx):
    _no_args("clear", args)
    ctx.conversation.clear_conversation()
    return "Chat history cleared successfully"


def _task(args, ctx):
    session = ctx.session
    if not args:
        task = session.get_current_task()
        return f"Current task: {task}" if task else "No current task set"
    if args == ["clear"]:
        session.set_current_task("")
        return "Cleared current task"
    if args == ["complete"]:
        task = session.get_current_task()
        if not task:
            return "No current task to complete"
        session.complete_current_task([])
        return f"Completed task: {task}"
    description = " ".join(args)
    session.set_current_task(description)
    return f"Set current task: {description}"


def _context(args, ctx):
    if args and args[0] == "stats":
        return ctx.conversation.get_context_stats()
    if args and args[0] == "task":
        return _task(args[1:], ctx)
    if args:
        raise CommandError(
            f"unknown subcommand: {args[0]}. "
            "Use '/context', '/context stats', or '/context task'"
        )
    return ctx.session.get_context_summary()


def _focus(args, ctx):
    session = ctx.session
    if not args:
        focused = session.get_focused_files()
        if not focused:
            return "No files currently focused"
        lines = [f"Focused files ({len(focused)}):"]
        lines.extend(f"{i}. {path}" for i, path in enumerate(focused, 1))
        return "\n".join(lines)
    if args == ["clear"]:
        session.clear_focused_files()
        return "Cleared all focused files"
    added = []
    for name in args:
        path = os.path.abspath(name)
        session.add_focused_file(path)
        added.append(path)
    return f"Added {len(added)} files to focus:\n" + "\n".join(added)


def _stats(args, ctx):
    _no_args("stats", args)
    return ctx.conversation.get_context_stats()


def _bookmark(args, ctx):
    session = ctx.session
    if not args:
        bookmarks = session.list_bookmarks()
        if not bookmarks:
            return "No bookmarks set"
        lines = [f"Bookmarks ({len(bookmarks)}):"]
        lines.extend(f"  {name} -> {bookmarks[name]}" for name in sorted(bookmarks))
        return "\n".join(lines)
    if args[0] == "remove":
        if len(args) != 2:
            raise CommandError("usage: /bookmark remove <name>")
        if not session.remove_bookmark(args[1]):
            raise CommandError(f"no bookmark named {args[1]!r}")
        return f"Removed bookmark: {args[1]}"
    if len(args) == 1:
        path = session.get_bookmark(args[0])
        if path is None:
            raise CommandError(f"no bookmark named {args[0]!r}")
        return f"{args[0]} -> {path}"
    if len(args) == 2:
        path = os.path.abspath(args[1])
        session.set_bookmark(args[0], path)
        return f"Bookmarked {args[0]} -> {path}"
    raise CommandError("usage: /bookmark [name [path]] or /bookmark remove <name>")


def _workspace(args, ctx):
    _no_args("workspace", args)
    session = ctx.session
    return (
        f"Working Directory: {session.working_dir}\n"
        f"Project Root: {session.project_root}\n"
        f"Project Type: {session.project_type}"
    )


def _model(args, ctx):
    if not args:
        return f"Current model: {ctx.model.get_current_model()}"
    new_model = " ".join(args)
    if new_model not in VALID_MODELS:
        raise CommandError(
            f"invalid model: {new_model}\nValid models: {', '.join(VALID_MODELS)}"
        )
    old_model = ctx.model.get_current_model()
    ctx.model.set_model(new_model)
    return f"Model changed from {old_model} to {new_model}"


_VERBOSE_ON = {"on", "true", "1", "yes"}
_VERBOSE_OFF = {"off", "false", "0", "no"}


def _verbose(args, ctx):
    if not args:
        enabled = not ctx.display.is_verbose()
    else:
        arg = args[0].lower()
        if arg in _VERBOSE_ON:
            enabled = True
        elif arg in _VERBOSE_OFF:
            enabled = False
        else:
            raise CommandError(f"invalid argument: {arg}. Use 'on' or 'off'")
    ctx.display.set_verbose(enabled)
    if enabled:
        return "Verbose mode enabled. Tool calls and timings will be shown."
    return "Quiet mode enabled. Only answers will be shown."


HELP_CATEGORIES = (
    "Chat & Session Management",
    "Context & Focus",
    "Model Control",
    "System Information",
)


def _help(args, ctx):
    registry = ctx.registry
    if args:
        command = registry.get(args[0].lstrip("/").lower())
        if command is None:
            return (
                f"Command '{args[0]}' not found. "
                "Use /help to see all available commands."
            )
        return (
            f"Command: /{command.name}\n"
            f"Description: {command.description}\n"
            f"Usage: {command.usage}"
        )

    lines = ["Available commands:", ""]
    commands = registry.list()
    for category in HELP_CATEGORIES:
        in_category = [c for c in commands if c.category == category]
        if not in_category:
            continue
        lines.append(f"{category}:")
        width = max(len(c.name) for c in in_category) + 1
        lines.extend(
            f"  /{c.name:<{width}} {c.description}" for c in in_category
        )
        lines.append("")
    lines.append("Use /help <command> for detailed help on a specific command.")
    return "\n".join(lines)


def _exit(args, ctx):
    _no_args("exit", args)
    return CommandResult(output="Goodbye!", exit=True)


BUILTIN_COMMANDS = (
    Command(
        "clear",
        "Clear this run's chat history (a one-shot run starts with none)",
        "/clear",
        _clear,
        "Chat & Session Management",
    ),
    Command(
        "exit",
        "Exit the application",
        "/exit",
        _exit,
        "Chat & Session Management",
    ),
    Command(
        "context",
        "Manage session tasks and context; stats cover this run's conversation",
        "/context [stats|task <description>|task clear|task complete]",
        _context,
        "Context & Focus",
    ),
    Command(
        "focus",
        "Set focus to specific files",
        "/focus <file1> [file2] ... or /focus clear",
        _focus,
        "Context & Focus",
    ),
    Command(
        "task",
        "Set or show current task",
        "/task [description] or /task clear or /task complete",
        _task,
        "Context & Focus",
    ),
    Command(
        "stats",
        "Show context window statistics for this run's conversation",
        "/stats",
        _stats,
        "Context & Focus",
    ),
    Command(
        "bookmark",
        "Save, show, or remove named paths",
        "/bookmark [name [path]] or /bookmark remove <name>",
        _bookmark,
        "Context & Focus",
    ),
    Command(
        "workspace",
        "Show working directory and project information",
        "/workspace",
        _workspace,
        "Context & Focus",
    ),
    Command(
        "model",
        "Switch the AI model",
        "/model <model-name> or /model to see current model",
        _model,
        "Model Control",
    ),
    Command(
        "verbose",
        "Control verbosity of diagnostics (on/off)",
        "/verbose [on|off]",
        _verbose,
    ),
    Command(
        "help",
        "Show available commands and usage information",
        "/help [command]",
        _help,
    ),
)


def default_registry() -> CommandRegistry:
    """Registry preloaded with all built-in commands."""
    registry = CommandRegistry()
    for command in BUILTIN_COMMANDS:
        registry.register(command)
    return registry
