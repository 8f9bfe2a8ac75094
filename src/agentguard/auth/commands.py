"""Static analysis of shell commands.

Answers "which files would this command touch, and how?" before the
command runs. Works across bash/zsh, Windows cmd and PowerShell.

This is a heuristic scanner, not a shell parser:
1. Dangerous signatures (rm -rf /, fork bombs, curl | sh, ...) short-circuit.
2. Obfuscation hints (substitution, base64, variables) add warnings.
3. The command is split on ; && || and newlines, outside quotes.
4. Each piece is lexed, its verb looked up in per-shell tables, and every
   plausible path argument becomes a FileOperation.
5. Redirections add Write (> >>) and Read (<) operations.

Path detection deliberately favours false positives. The ACL and
off-limits layers decide what an operation on a path actually means.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import NamedTuple

logger = logging.getLogger(__name__)


class OperationKind(str, Enum):
    """How a command touches a path."""

    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    EXECUTE = "execute"
    PERMISSION_CHANGE = "permission_change"
    COPY = "copy"
    MOVE = "move"

    @property
    def is_mutating(self) -> bool:
        return self in _MUTATING_KINDS


_MUTATING_KINDS = frozenset({
    OperationKind.WRITE,
    OperationKind.DELETE,
    OperationKind.PERMISSION_CHANGE,
    OperationKind.COPY,
    OperationKind.MOVE,
})


@dataclass
class FileOperation:
    """A file operation detected in a command."""

    kind: OperationKind
    path: str
    command: str  # verb or redirection operator that produced it
    uncertain: bool = False  # path built from a variable or substitution


@dataclass
class CommandAnalysis:
    """Result of analyzing one shell command."""

    operations: list[FileOperation] = field(default_factory=list)
    dangerous: bool = False
    reason: str | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def mutating_operations(self) -> list[FileOperation]:
        return [op for op in self.operations if op.kind.is_mutating]


# ── Verb tables ─────────────────────────────────────────

R, W, D, X, P, C, M = (
    OperationKind.READ,
    OperationKind.WRITE,
    OperationKind.DELETE,
    OperationKind.EXECUTE,
    OperationKind.PERMISSION_CHANGE,
    OperationKind.COPY,
    OperationKind.MOVE,
)

READ_VERBS: dict[str, OperationKind] = {
    # POSIX
    "cat": R, "head": R, "tail": R, "less": R, "more": R,
    "grep": R, "egrep": R, "fgrep": R, "rg": R, "ag": R, "ack": R,
    "strings": R, "xxd": R, "hexdump": R, "od": R, "file": R, "wc": R,
    "source": R, ".": R, "lsattr": R,
    # cmd
    "type": R, "find": R, "findstr": R,
    # PowerShell
    "get-content": R, "gc": R, "select-string": R, "import-csv": R,
    "import-clixml": R, "convertfrom-json": R, "get-acl": R,
}

WRITE_VERBS: dict[str, OperationKind] = {
    # POSIX
    "tee": W, "dd": W, "install": W, "touch": W, "truncate": W,
    "mkfifo": W, "mknod": W, "patch": W, "split": W, "csplit": W, "ln": W,
    # cmd
    "copy": C, "xcopy": C, "robocopy": C, "move": M, "ren": M, "rename": M,
    # PowerShell
    "set-content": W, "sc": W, "out-file": W, "add-content": W, "ac": W,
    "new-item": W, "ni": W, "copy-item": C, "ci": C, "cpi": C,
    "move-item": M, "mi": M, "export-csv": W, "export-clixml": W,
    "convertto-json": W, "clear-content": W,
}

DELETE_VERBS: dict[str, OperationKind] = {
    "rm": D, "rmdir": D, "unlink": D, "shred": D,
    "del": D, "erase": D, "rd": D,
    "remove-item": D, "ri": D,
}

PERMISSION_VERBS: dict[str, OperationKind] = {
    "chmod": P, "chown": P, "chgrp": P, "setfacl": P, "chattr": P,
    "icacls": P, "cacls": P, "takeown": P, "attrib": P,
    "set-acl": P,
}

COPY_MOVE_VERBS: dict[str, OperationKind] = {
    "cp": C, "mv": M, "rsync": C, "scp": C,
}

VERB_OPERATIONS: dict[str, OperationKind] = {
    **READ_VERBS,
    **WRITE_VERBS,
    **DELETE_VERBS,
    **PERMISSION_VERBS,
    **COPY_MOVE_VERBS,
}

# Shells whose inline script is analyzed recursively, with the flag that
# introduces it.
INLINE_SHELLS: dict[str, tuple[str, ...]] = {
    "bash": ("-c",), "sh": ("-c",), "zsh": ("-c",), "dash": ("-c",), "ksh": ("-c",),
    "cmd": ("/c", "/k"),
    "pwsh": ("-c", "-command"), "powershell": ("-c", "-command"),
}

# Interpreters that execute their first path argument.
INTERPRETERS = frozenset({
    "bash", "sh", "zsh", "dash", "ksh", "fish",
    "python", "python3", "node", "ruby", "perl", "php",
    "pwsh", "powershell",
})

_INLINE_CODE_FLAGS = frozenset({"-c", "-e", "-m", "-command", "--eval"})

_WRAPPERS = frozenset({"sudo", "nohup", "time", "command", "builtin", "exec", "env", "nice"})

# ── Signatures ──────────────────────────────────────────

_BLOCK_DEVICE = r"/dev/(?:sd[a-z]|hd[a-z]|vd[a-z]|nvme\d|mmcblk\d|disk\d)"
_END = r"\s*(?:$|;|&&|\|\||&|\|)"
_RM_FLAGS = r"rm\s+(?:(?:-[a-zA-Z]*[rfRF][a-zA-Z]*|--recursive|--force|--no-preserve-root)\s+)+"
_ROOT_TARGET = r"""(["']?)(?:/|/\*|~/?|~/\*|\$HOME/?)\1"""

DANGEROUS_PATTERNS: list[tuple[re.Pattern, str]] = [
    (re.compile(_RM_FLAGS + _ROOT_TARGET + r"(?:\s+--[a-z-]+)*" + _END),
     "Recursive delete of root or home directory"),
    (re.compile(_RM_FLAGS + r"\*" + _END),
     "Recursive delete with dangerous glob pattern"),
    (re.compile(r":\s*\(\s*\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:"), "Fork bomb detected"),
    (re.compile(r"\.\s*/\s*\.:"), "Fork bomb variant detected"),
    (re.compile(r">\s*" + _BLOCK_DEVICE), "Direct disk write attempt"),
    (re.compile(r"\bdd\s+.*of\s*=\s*" + _BLOCK_DEVICE, re.IGNORECASE), "Direct disk write via dd"),
    (re.compile(r"\bmkfs(?:\.\w+)?\s+(?:-\S+\s+)*" + _BLOCK_DEVICE), "Filesystem format of a block device"),
    (re.compile(r"curl\s+[^|]*\|\s*(?:sudo\s+)?(?:ba|z|da)?sh\b", re.IGNORECASE),
     "Download and execute pattern (curl | sh)"),
    (re.compile(r"wget\s+[^|]*\|\s*(?:sudo\s+)?(?:ba|z|da)?sh\b", re.IGNORECASE),
     "Download and execute pattern (wget | sh)"),
    (re.compile(r"Invoke-WebRequest[^|]*\|\s*Invoke-Expression", re.IGNORECASE),
     "Download and execute pattern (PowerShell IWR | IEX)"),
    (re.compile(r"\biwr\s+[^|]*\|\s*iex\b", re.IGNORECASE),
     "Download and execute pattern (PowerShell iwr | iex)"),
    (re.compile(r"DownloadString\s*\([^)]+\)[^|]*\|\s*(?:iex|Invoke-Expression)", re.IGNORECASE),
     "Download and execute pattern (DownloadString | IEX)"),
    (re.compile(r"\b(?:iex|Invoke-Expression)\s*\(+\s*New-Object\s+Net\.WebClient\)?\.DownloadString", re.IGNORECASE),
     "Download and execute pattern (IEX DownloadString)"),
    (re.compile(r"\beval\s+[\"']?\$"), "Eval of variable content"),
    (re.compile(r"\bhistory\s+-c\b"), "History clearing detected"),
    (re.compile(r">\s*~/\.(?:bash|zsh)_history"), "History file truncation"),
    (re.compile(r"\bunset\s+HISTFILE\b"), "History recording disabled"),
    (re.compile(r"Remove-Item.*ConsoleHost_history\.txt", re.IGNORECASE), "PowerShell history deletion"),
    (re.compile(r"\bsetenforce\s+0"), "SELinux disable attempt"),
    (re.compile(r"\biptables\s+-F"), "Firewall flush attempt"),
    (re.compile(r"\b(?:cat|head|tail|less|more)\s+/etc/shadow"), "Shadow file access attempt"),
    (re.compile(r">\s*/etc/passwd|echo.*>>\s*/etc/passwd"), "Password file modification attempt"),
]

BYPASS_WARNINGS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"\$\([^)]+\)|`[^`]+`"), "Command contains command substitution - paths may be dynamic"),
    (re.compile(r"base64\s+(?:-d|--decode)", re.IGNORECASE), "Command contains base64 decode - potential obfuscation"),
    (re.compile(r"xxd\s+-r|od\s+-A"), "Command contains hex decode - potential obfuscation"),
    (re.compile(r"\$[A-Za-z_][A-Za-z0-9_]*|\$\{[^}]+\}"), "Command contains variable expansion - paths may be dynamic"),
]

NEWLINE_WARNING = "Command contains embedded newlines"

# ── Path heuristics ─────────────────────────────────────

SHELL_OPERATORS = frozenset({
    "|", ">", ">>", "<", "<<", "<<<", "&&", "||", ";", "&", "2>", "2>>", "&>", "&>>", "|&",
})

KNOWN_EXTENSIONS = (
    ".txt", ".json", ".yaml", ".yml", ".xml", ".md", ".env",
    ".sh", ".ps1", ".py", ".cs", ".js", ".ts",
)

SENSITIVE_NAMES = (".env", ".npmrc", ".pypirc", "secrets", "credentials", "config", "passwd", "shadow")

_INTEGER = re.compile(r"[+-]?\d+")
_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")
_FD_DUP = re.compile(r"\d+-?|-")

MAX_INLINE_DEPTH = 3


def looks_like_path(value: str) -> bool:
    """Heuristic: could this token name a file?

    Rejects flags, integers and operators. Accepts anything with a
    separator or extension, sensitive names, and short bare words.
    """
    if not value or not value.strip():
        return False
    if value.startswith(("-", "&", "2>")):
        return False
    if value in SHELL_OPERATORS:
        return False
    if _INTEGER.fullmatch(value):
        return False

    if "/" in value or "\\" in value or ("." in value and not value.startswith(".")):
        return True

    lowered = value.lower()
    if lowered.endswith(KNOWN_EXTENSIONS):
        return True
    if any(name in lowered for name in SENSITIVE_NAMES):
        return True

    return " " not in value and len(value) < 100


def extract_paths(tokens: list[str]) -> list[str]:
    return [t for t in tokens if t and not t.startswith("-") and t not in SHELL_OPERATORS and looks_like_path(t)]


# ── Scanning ────────────────────────────────────────────

def split_command(command: str) -> list[str]:
    """Split on ``;``, newline, ``&&`` and ``||`` outside quotes.

    Single ``&`` and ``|`` stay inside their sub-command. Quotes and
    escapes are preserved in the returned pieces.
    """
    parts: list[str] = []
    current: list[str] = []
    in_single = in_double = escape_next = False
    i = 0

    def flush():
        if current:
            parts.append("".join(current))
            current.clear()

    while i < len(command):
        c = command[i]

        if escape_next:
            current.append(c)
            escape_next = False
        elif c == "\\" and not in_single:
            current.append(c)
            escape_next = True
        elif c == "'" and not in_double:
            in_single = not in_single
            current.append(c)
        elif c == '"' and not in_single:
            in_double = not in_double
            current.append(c)
        elif in_single or in_double:
            current.append(c)
        elif c in ";\n":
            flush()
        elif command.startswith("&&", i) or command.startswith("||", i):
            flush()
            i += 1
        else:
            current.append(c)
        i += 1

    flush()
    return [p for p in parts if p.strip()]


class Token(NamedTuple):
    text: str
    is_operator: bool = False


_OPERATOR_TEXTS = ("<<<", "&>>", ">>", "<<", "&&", "||", "|&", "&>", ">&", "<&", ">", "<", "|", "&", ";")


def tokenize(command: str) -> list[Token]:
    """Lex a command into words and operators, honouring quotes and escapes.

    Quotes are stripped from words. A digit run glued to a redirection
    (``2>``) becomes part of the operator, and descriptor duplication
    (``2>&1``) is lexed as one operator with no target.
    """
    tokens: list[Token] = []
    current: list[str] = []
    in_word = False
    quote: str | None = None
    i = 0
    n = len(command)

    def flush():
        nonlocal in_word
        if in_word:
            tokens.append(Token("".join(current)))
            current.clear()
            in_word = False

    while i < n:
        c = command[i]

        if quote == "'":
            if c == "'":
                quote = None
            else:
                current.append(c)
            i += 1
            continue

        if quote == '"':
            if c == '"':
                quote = None
            elif c == "\\" and i + 1 < n and command[i + 1] in '"\\$`':
                current.append(command[i + 1])
                i += 1
            else:
                current.append(c)
            i += 1
            continue

        if c == "\\":
            if i + 1 < n:
                current.append(command[i + 1])
                in_word = True
            i += 2
            continue

        if c in "'\"":
            quote = c
            in_word = True
            i += 1
            continue

        if c == "\n":
            flush()
            tokens.append(Token(";", True))
            i += 1
            continue

        if c.isspace():
            flush()
            i += 1
            continue

        if c in "<>&|;":
            prefix = ""
            if c in "<>" and in_word and "".join(current).isdigit():
                prefix = "".join(current)
                current.clear()
                in_word = False
            else:
                flush()

            op = next(o for o in _OPERATOR_TEXTS if command.startswith(o, i))
            i += len(op)

            if op in (">&", "<&"):
                dup = _FD_DUP.match(command, i)
                if dup:
                    i = dup.end()
                    tokens.append(Token(prefix + op + dup.group(), True))
                    continue
                op = "&>"  # csh-style >&file redirects both streams

            tokens.append(Token(prefix + op, True))
            continue

        current.append(c)
        in_word = True
        i += 1

    flush()
    return tokens


_STAGE_SEPARATORS = frozenset({"|", "|&", "&", ";", "&&", "||"})
_OUTPUT_REDIRECT = re.compile(r"^(?:\d*>>?|&>>?)$")
_INPUT_REDIRECT = re.compile(r"^\d*<$")
_HEREDOC = re.compile(r"^\d*<<<?$")


def _split_stages(tokens: list[Token]) -> list[list[Token]]:
    stages: list[list[Token]] = [[]]
    for token in tokens:
        if token.is_operator and token.text in _STAGE_SEPARATORS:
            stages.append([])
        else:
            stages[-1].append(token)
    return [s for s in stages if s]


def command_stages(command: str) -> list[list[Token]]:
    """Simple commands of ``command``, split at every list and pipeline operator."""
    return _split_stages(tokenize(command))


def _uncertain(path: str) -> bool:
    return "$" in path or "`" in path


class CommandAnalyzer:
    """Detects file operations and dangerous patterns in shell commands."""

    def check_dangerous(self, command: str) -> tuple[bool, str | None]:
        """Match the whole command against the dangerous signature list."""
        for pattern, reason in DANGEROUS_PATTERNS:
            if pattern.search(command):
                return True, reason
        return False, None

    def analyze(self, command: str) -> CommandAnalysis:
        """Analyze a command and return every detected file operation."""
        return self._analyze(command, depth=0)

    def _analyze(self, command: str, depth: int) -> CommandAnalysis:
        result = CommandAnalysis()
        if not command or not command.strip():
            return result

        dangerous, reason = self.check_dangerous(command)
        if dangerous:
            result.dangerous = True
            result.reason = reason
            logger.debug(f"Dangerous command pattern: {reason}")
            return result

        result.warnings.extend(self.bypass_warnings(command))

        for sub_command in split_command(command):
            self._analyze_sub_command(sub_command.strip(), result, depth)
            if result.dangerous:
                break

        return result

    @staticmethod
    def bypass_warnings(command: str) -> list[str]:
        """Advisory warnings for constructs that hide the real target path."""
        warnings = [message for pattern, message in BYPASS_WARNINGS if pattern.search(command)]
        if "\n" in command or "$'\\n'" in command or "%0a" in command.lower():
            warnings.append(NEWLINE_WARNING)
        return warnings

    def _analyze_sub_command(self, command: str, result: CommandAnalysis, depth: int) -> None:
        if not command:
            return
        for stage in _split_stages(tokenize(command)):
            words = self._collect_redirections(stage, result)
            self._analyze_words(words, result, depth)

    def _collect_redirections(self, stage: list[Token], result: CommandAnalysis) -> list[str]:
        """Record redirection targets and return the remaining plain words."""
        words: list[str] = []
        i = 0
        while i < len(stage):
            token = stage[i]
            if not token.is_operator:
                words.append(token.text)
                i += 1
                continue

            target = stage[i + 1].text if i + 1 < len(stage) and not stage[i + 1].is_operator else None
            if target is None:
                i += 1
                continue

            if _OUTPUT_REDIRECT.match(token.text):
                self._add_redirect(result, OperationKind.WRITE, target, token.text)
            elif _INPUT_REDIRECT.match(token.text):
                self._add_redirect(result, OperationKind.READ, target, token.text)
            elif not _HEREDOC.match(token.text):
                # Descriptor duplication carries no target; keep the word.
                i += 1
                continue
            i += 2

        return words

    @staticmethod
    def _add_redirect(result: CommandAnalysis, kind: OperationKind, target: str, operator: str) -> None:
        if target.startswith("&") or not looks_like_path(target):
            return
        result.operations.append(FileOperation(kind, target, operator.lstrip("0123456789"), _uncertain(target)))

    def _analyze_words(self, words: list[str], result: CommandAnalysis, depth: int) -> None:
        idx = 0
        after_wrapper = False
        while idx < len(words):
            word = words[idx]
            if _ASSIGNMENT.match(word) or word.lower() in _WRAPPERS or (after_wrapper and word.startswith("-")):
                after_wrapper = after_wrapper or word.lower() in _WRAPPERS
                idx += 1
                continue
            break
        if idx >= len(words):
            return

        verb = words[idx]
        args = words[idx + 1:]
        name = verb.replace("\\", "/").rsplit("/", 1)[-1].lower()
        if name.endswith(".exe"):
            name = name[:-4]

        def emit(kind: OperationKind, paths: list[str], origin: str) -> None:
            for path in paths:
                result.operations.append(FileOperation(kind, path, origin, _uncertain(path)))

        if name == "sed":
            self._analyze_sed(args, emit)
            return

        if name in ("awk", "gawk"):
            emit(OperationKind.READ, extract_paths(self._awk_inputs(args)), name)
            return

        if name in INLINE_SHELLS:
            script = self._inline_script(args, INLINE_SHELLS[name])
            if script is not None:
                self._analyze_inline(script, result, depth)
                return

        if name in INTERPRETERS:
            if not any(a.lower() in _INLINE_CODE_FLAGS for a in args):
                script_args = [a for a in args if not a.startswith("-")][:1]
                emit(OperationKind.EXECUTE, extract_paths(script_args), name)
            return

        kind = VERB_OPERATIONS.get(name)
        if kind is not None:
            emit(kind, extract_paths(args), name)
        elif ("/" in verb or "\\" in verb) and looks_like_path(verb):
            emit(OperationKind.EXECUTE, [verb], verb)

    @staticmethod
    def _analyze_sed(args: list[str], emit) -> None:
        in_place = any(
            a == "-i" or a.startswith("-i") or a == "--in-place" or a.startswith("--in-place=")
            for a in args
        )
        if in_place:
            last = args[-1] if args else None
            if last and not last.startswith("-") and looks_like_path(last):
                emit(OperationKind.WRITE, [last], "sed -i")
            return

        inputs: list[str] = []
        script_given = False
        skip_next = False
        for arg in args:
            if skip_next:
                skip_next = False
                continue
            if arg in ("-e", "--expression", "-f", "--file"):
                script_given = True
                skip_next = True
                continue
            if arg.startswith("-"):
                continue
            if not script_given:
                script_given = True  # first positional is the script
                continue
            inputs.append(arg)
        emit(OperationKind.READ, extract_paths(inputs), "sed")

    @staticmethod
    def _awk_inputs(args: list[str]) -> list[str]:
        inputs: list[str] = []
        program_seen = False
        skip_next = False
        for arg in args:
            if skip_next:
                skip_next = False
                continue
            if arg in ("-F", "-v", "-f"):
                program_seen = program_seen or arg == "-f"
                skip_next = True
                continue
            if arg.startswith("-"):
                continue
            if not program_seen:
                program_seen = True
                continue
            inputs.append(arg)
        return inputs

    @staticmethod
    def _inline_script(args: list[str], flags: tuple[str, ...]) -> str | None:
        for i, arg in enumerate(args):
            if arg.lower() in flags and i + 1 < len(args):
                return " ".join(args[i + 1:]) if flags[0] == "/c" else args[i + 1]
        return None

    def _analyze_inline(self, script: str, result: CommandAnalysis, depth: int) -> None:
        if depth >= MAX_INLINE_DEPTH:
            result.warnings.append("Nested shell invocation too deep to analyze")
            return
        nested = self._analyze(script, depth + 1)
        if nested.dangerous:
            result.dangerous = True
            result.reason = nested.reason
            return
        result.operations.extend(nested.operations)
        for warning in nested.warnings:
            if warning not in result.warnings:
                result.warnings.append(warning)
