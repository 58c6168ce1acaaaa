"""Yes/no confirmation with a timeout and safe default."""
import select
import sys

from stackbackup.utils import get_logger

logger = get_logger(__name__)


class Prompter:
    """Ask for confirmation before destructive steps.

    ``auto_yes`` answers yes without asking. ``non_interactive`` (or no TTY on
    stdin) answers with the default. An interactive prompt that gets no input
    within ``timeout`` seconds also takes the default.
    """

    def __init__(self, auto_yes=False, non_interactive=False, timeout=60, stream=None, output=None):
        self.auto_yes = auto_yes
        self.non_interactive = non_interactive
        self.timeout = timeout
        self.stream = stream or sys.stdin
        self.output = output or sys.stderr

    @classmethod
    def from_config(cls, config):
        return cls(auto_yes=config.auto_yes, non_interactive=config.non_interactive, timeout=config.prompt_timeout)

    def _readline(self):
        try:
            ready, _, _ = select.select([self.stream], [], [], self.timeout)
        except (OSError, ValueError, TypeError):
            # streams without a file descriptor (tests, pipes on some platforms)
            return self.stream.readline()
        if not ready:
            return None
        return self.stream.readline()

    def confirm(self, question, default=False):
        if self.auto_yes:
            logger.info("%s -> yes (auto)", question)
            return True
        interactive = not self.non_interactive and getattr(self.stream, 'isatty', lambda: False)()
        if not interactive:
            logger.info("%s -> %s (non-interactive default)", question, 'yes' if default else 'no')
            return default

        hint = 'Y/n' if default else 'y/N'
        self.output.write(f"{question} [{hint}] (timeout {self.timeout}s): ")
        self.output.flush()
        answer = self._readline()
        if answer is None:
            self.output.write("\n")
            logger.warning("No answer within %ss; using default (%s)", self.timeout, 'yes' if default else 'no')
            return default
        answer = answer.strip().lower()
        if not answer:
            return default
        return answer in ('y', 'yes')
