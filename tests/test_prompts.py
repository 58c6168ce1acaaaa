import io

from stackbackup.config import Config
from stackbackup.prompts import Prompter


class FakeTTY(io.StringIO):
    def isatty(self):
        return True


def test_auto_yes_and_non_interactive():
    assert Prompter(auto_yes=True).confirm('Restore?') is True
    assert Prompter(non_interactive=True).confirm('Restore?') is False
    assert Prompter(non_interactive=True).confirm('Keep going?', default=True) is True


def test_no_tty_takes_default():
    out = io.StringIO()
    p = Prompter(stream=io.StringIO('y\n'), output=out)
    assert p.confirm('Restore?') is False
    assert out.getvalue() == ''


def test_interactive_answers():
    out = io.StringIO()
    assert Prompter(stream=FakeTTY('yes\n'), output=out).confirm('Restore?') is True
    assert '[y/N]' in out.getvalue()
    assert Prompter(stream=FakeTTY('n\n'), output=io.StringIO()).confirm('Restore?', default=True) is False
    assert Prompter(stream=FakeTTY('\n'), output=io.StringIO()).confirm('Restore?', default=True) is True


def test_timeout_takes_default(monkeypatch):
    monkeypatch.setattr('stackbackup.prompts.select.select', lambda r, w, x, t: ([], [], []))
    p = Prompter(stream=FakeTTY('y\n'), output=io.StringIO(), timeout=1)
    assert p.confirm('Restore?') is False


def test_from_config():
    p = Prompter.from_config(Config(auto_yes=True, prompt_timeout=5))
    assert p.auto_yes and p.timeout == 5
