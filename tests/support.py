import logging
import os
import subprocess
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from webhost_provision.config import AppConfig, HostConfig
from webhost_provision.context import RunContext
from webhost_provision.errors import ExecutionError
from webhost_provision.state import StateStore
from webhost_provision.system import System

_DEVNULL = open(os.devnull, "w")

SSHD_CONFIG = """\
# This is the sshd server system-wide configuration file.
Include /etc/ssh/sshd_config.d/*.conf

#Port 22
PermitRootLogin prohibit-password
KbdInteractiveAuthentication no
UsePAM yes
X11Forwarding yes
Subsystem sftp /usr/lib/openssh/sftp-server
"""

BEFORE_RULES = """\
#
# rules.before
#
# Rules that should be run before the ufw command line added rules. Custom
# rules should be added to one of these chains:
#   ufw-before-input
#   ufw-before-output
#   ufw-before-forward
#

# Don't delete these required lines, otherwise there will be errors
*filter
:ufw-before-input - [0:0]
:ufw-before-output - [0:0]
:ufw-before-forward - [0:0]
:ufw-not-local - [0:0]
# End required lines


# allow all on loopback
-A ufw-before-input -i lo -j ACCEPT
-A ufw-before-output -o lo -j ACCEPT

# quickly process packets for which we already have a connection
-A ufw-before-input -m conntrack --ctstate RELATED,ESTABLISHED -j ACCEPT
-A ufw-before-output -m conntrack --ctstate RELATED,ESTABLISHED -j ACCEPT
-A ufw-before-forward -m conntrack --ctstate RELATED,ESTABLISHED -j ACCEPT

# drop INVALID packets (logs these in loglevel medium and higher)
-A ufw-before-input -m conntrack --ctstate INVALID -j ufw-logging-deny
-A ufw-before-input -m conntrack --ctstate INVALID -j DROP

# ok icmp codes for INPUT
-A ufw-before-input -p icmp --icmp-type destination-unreachable -j ACCEPT
-A ufw-before-input -p icmp --icmp-type echo-request -j ACCEPT

# allow dhcp client to work
-A ufw-before-input -p udp --sport 67 --dport 68 -j ACCEPT

#
# ufw-not-local
#
-A ufw-before-input -j ufw-not-local

# if LOCAL, RETURN
-A ufw-not-local -m addrtype --dst-type LOCAL -j RETURN

# if MULTICAST, RETURN
-A ufw-not-local -m addrtype --dst-type MULTICAST -j RETURN

# if BROADCAST, RETURN
-A ufw-not-local -m addrtype --dst-type BROADCAST -j RETURN

# all other non-local packets are dropped
-A ufw-not-local -m limit --limit 3/min --limit-burst 10 -j ufw-logging-deny
-A ufw-not-local -j DROP

# allow MULTICAST mDNS for service discovery (be sure the MULTICAST line above
# is uncommented)
-A ufw-before-input -p udp -d 224.0.0.251 --dport 5353 -j ACCEPT

# allow MULTICAST UPnP for service discovery (be sure the MULTICAST line above
# is uncommented)
-A ufw-before-input -p udp -d 239.255.255.250 --dport 1900 -j ACCEPT

# don't delete the 'COMMIT' line or these rules won't be processed
COMMIT
"""

UFW_DEFAULTS = """\
# /etc/default/ufw
IPV6=no
DEFAULT_INPUT_POLICY="DROP"
"""

LOGIN_DEFS = """\
MAIL_DIR        /var/mail
PASS_MAX_DAYS   99999
PASS_MIN_DAYS   0
PASS_WARN_AGE   7
UID_MIN                  1000
"""


class FakeUfw:
    """Just enough of ufw's behaviour to check the resulting rule set."""

    def __init__(self):
        self.active = False
        self.defaults = {}
        self.rules: List[Tuple[str, str]] = []
        self.log_level = "off"

    def handle(self, args: List[str]) -> str:
        if args[:2] == ["--force", "reset"]:
            self.active = False
            self.defaults = {}
            self.rules = []
            return "Resetting all rules to installed defaults."
        if args[:2] == ["--force", "enable"]:
            self.active = True
            return "Firewall is active and enabled on system startup"
        if args[0] == "default":
            self.defaults[args[2]] = args[1]
            return ""
        if args[0] in ("allow", "limit", "deny"):
            entry = (args[0], args[1])
            if entry in self.rules:
                return "Skipping adding existing rule"
            self.rules.append(entry)
            return "Rule added"
        if args[0] == "logging":
            self.log_level = args[1]
            return ""
        if args[:2] == ["show", "added"]:
            lines = ["Added user rules (see 'ufw status' for running firewall):"]
            lines += [f"ufw {action} {rule}" for action, rule in self.rules]
            return "\n".join(lines)
        if args[0] == "status":
            if not self.active:
                return "Status: inactive"
            lines = ["Status: active", ""]
            lines += [f"{rule:<28}{action.upper()} IN    Anywhere" for action, rule in self.rules]
            return "\n".join(lines)
        return ""

    def allow_list(self) -> List[Tuple[str, str]]:
        return [(rule, action) for action, rule in self.rules if action in ("allow", "limit")]


class FakeRunner:
    """
    Command runner that records every command instead of executing it.

    Unscripted commands succeed with empty output, except ``ufw`` which is
    answered by a ``FakeUfw``.
    """

    def __init__(self):
        self.calls: List[List[str]] = []
        self.inputs: List[Optional[str]] = []
        self.ufw = FakeUfw()
        self._responses = []

    def respond(
        self,
        *prefix: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        effect: Optional[Callable[[List[str]], None]] = None,
    ) -> None:
        """Script the result of commands starting with ``prefix``; later calls win."""
        self._responses.insert(0, (tuple(prefix), returncode, stdout, stderr, effect))

    def __call__(self, cmd, check=True, capture_output=True, timeout=None, env=None, input=None):
        cmd = [str(part) for part in cmd]
        self.calls.append(cmd)
        self.inputs.append(input)
        returncode, stdout, stderr = 0, "", ""
        for prefix, rc, out, err, effect in self._responses:
            if tuple(cmd[: len(prefix)]) == prefix:
                if effect is not None:
                    effect(cmd)
                returncode, stdout, stderr = rc, out, err
                break
        else:
            if cmd[0] == "ufw":
                stdout = self.ufw.handle(cmd[1:])
        if returncode != 0 and check:
            raise ExecutionError(
                f"Command failed (code {returncode}): {' '.join(cmd)}",
                returncode=returncode,
                stdout=stdout,
                stderr=stderr,
            )
        return subprocess.CompletedProcess(cmd, returncode, stdout, stderr)

    def ran(self, *prefix: str) -> bool:
        return self.count(*prefix) > 0

    def count(self, *prefix: str) -> int:
        return sum(1 for cmd in self.calls if tuple(cmd[: len(prefix)]) == prefix)

    def clear(self) -> None:
        self.calls = []
        self.inputs = []


class HostTestCase(unittest.TestCase):
    """Base class: a host rooted in a temp directory, a fake runner and scripted prompts."""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.settings = AppConfig().rooted(self.root)
        self.host = HostConfig(
            domain="example.com",
            admin_email="admin@example.com",
            server_ip="203.0.113.10",
            ssh_port=2222,
        )
        self.runner = FakeRunner()
        self.answers: List[bool] = []
        self.questions: List[str] = []
        self.ctx = self.make_context()

        self.write(self.settings.SSHD_CONFIG, SSHD_CONFIG)
        self.write(self.settings.UFW_BEFORE_RULES, BEFORE_RULES)
        self.write(self.settings.UFW_DEFAULTS, UFW_DEFAULTS)
        self.write(self.settings.LOGIN_DEFS, LOGIN_DEFS)

        self._suppress = redirect_stdout(_DEVNULL)
        self._suppress.__enter__()
        logging.getLogger("webhost_provision").setLevel(logging.CRITICAL)

    def tearDown(self):
        logging.getLogger("webhost_provision").setLevel(logging.NOTSET)
        self._suppress.__exit__(None, None, None)
        self._tmp.cleanup()

    def prompt(self, question: str, default: bool) -> bool:
        self.questions.append(question)
        return self.answers.pop(0) if self.answers else default

    def make_context(self, host: Optional[HostConfig] = None) -> RunContext:
        return RunContext(
            host=host or self.host,
            settings=self.settings,
            state=StateStore(self.settings.STATE_FILE),
            system=System(self.runner),
            prompt=self.prompt,
        )

    def write(self, path: Path, content: str) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        return path

    def backups(self, path: Path) -> List[Path]:
        return sorted(path.parent.glob(f"{path.name}.backup.*"))

    def snapshot_tree(self) -> dict:
        """Every file under the root with its content, for before/after comparisons."""
        tree = {}
        for path in sorted(self.root.rglob("*")):
            if path.is_symlink():
                tree[str(path)] = ("link", os.readlink(path))
            elif path.is_file() and not path.name.endswith(".lock"):
                tree[str(path)] = ("file", path.read_bytes())
        return tree

    def mark_installed(self) -> None:
        """Make every package look installed and the deploy user fully set up."""
        self.runner.respond("dpkg-query", stdout="install ok installed")
        self.runner.respond("id", "-nG", stdout="deploy www-data sudo")
        self.runner.respond("timedatectl", "show", "--property=Timezone", stdout="UTC\n")
        self.runner.respond("timedatectl", "show", "--property=NTP", stdout="yes\n")
        self.runner.respond("systemctl", "is-enabled", returncode=1)
