import dataclasses
import unittest
from unittest import mock

from webhost_provision.errors import (
    BlockAnchorError,
    ExecutionError,
    RetriableError,
    StagedConfigError,
)
from webhost_provision.modules import FirewallModule, HardeningModule
from webhost_provision.system import declare_ufw_chains

from tests.support import BEFORE_RULES, HostTestCase


class FirewallTestCase(HostTestCase):
    def setUp(self):
        super().setUp()
        self.mark_installed()
        self.module = FirewallModule(self.ctx)

    def run_firewall(self):
        return FirewallModule(self.ctx).run()


class TestRuleSet(FirewallTestCase):
    def test_allow_list_after_hardening(self):
        HardeningModule(self.ctx).run()
        self.run_firewall()

        self.assertEqual(
            sorted(self.runner.ufw.allow_list()),
            [("2222/tcp", "limit"), ("443/tcp", "allow"), ("80/tcp", "allow")],
        )
        self.assertEqual(self.runner.ufw.defaults, {"incoming": "deny", "outgoing": "allow"})
        self.assertTrue(self.runner.ufw.active)
        self.assertEqual(self.runner.ufw.log_level, "low")
        self.assertIn(("deny", "3389"), self.runner.ufw.rules)
        self.assertTrue(self.ctx.state.exists("FIREWALL_COMPLETE"))

    def test_rerun_keeps_rules_without_duplicates(self):
        self.run_firewall()
        rules = list(self.runner.ufw.rules)
        self.run_firewall()

        self.assertEqual(self.runner.ufw.rules, rules)
        self.assertEqual(self.runner.count("ufw", "--force", "reset"), 1)
        self.assertEqual(self.runner.count("ufw", "--force", "enable"), 1)
        self.assertEqual(self.runner.count("ufw", "reload"), 1)

    def test_enable_waits_for_ssh_rule(self):
        self.runner.respond("ufw", "limit", returncode=1, stderr="ERROR: Bad port")
        with self.assertRaises(ExecutionError):
            self.module.setup_rules()
        self.assertFalse(self.runner.ufw.active)

        with self.assertRaises(StagedConfigError):
            self.module.enable()
        self.assertFalse(self.runner.ran("ufw", "--force", "enable"))

    def test_signature_change_rebuilds(self):
        self.run_firewall()
        self.write(self.settings.CUSTOM_UFW_RULES, "# office\nallow from 198.51.100.0/24 to any port 5432\n")
        self.run_firewall()

        self.assertEqual(self.runner.count("ufw", "--force", "reset"), 2)
        self.assertTrue(
            self.runner.ran("ufw", "allow", "from", "198.51.100.0/24", "to", "any", "port", "5432")
        )
        self.assertIn("custom=", self.ctx.state.get("UFW_CONFIGURED"))
        self.assertNotIn("custom=none", self.ctx.state.get("UFW_CONFIGURED"))

    def test_inactive_firewall_is_rebuilt_even_with_matching_state(self):
        self.run_firewall()
        self.runner.ufw.active = False
        self.run_firewall()
        self.assertEqual(self.runner.count("ufw", "--force", "reset"), 2)
        self.assertTrue(self.runner.ufw.active)

    def test_custom_rules_parsing(self):
        self.write(
            self.settings.CUSTOM_UFW_RULES,
            "\n# comment\nallow from 10.0.0.0/8\ndeny out 'to any port 6667'\n",
        )
        self.assertEqual(
            self.module.custom_rules(),
            [["allow", "from", "10.0.0.0/8"], ["deny", "out", "to any port 6667"]],
        )

    def test_ipv6_enabled(self):
        self.assertTrue(self.module.configure_ipv6())
        self.assertIn("IPV6=yes\n", self.settings.UFW_DEFAULTS.read_text())
        self.assertFalse(self.module.configure_ipv6())

    def test_ipv6_skipped_without_defaults_file(self):
        self.settings.UFW_DEFAULTS.unlink()
        self.assertFalse(self.module.configure_ipv6())
        self.assertFalse(self.settings.UFW_DEFAULTS.exists())

    def test_install_retries_follow_settings(self):
        self.settings = dataclasses.replace(self.settings, MAX_RETRIES=5)
        self.ctx = self.make_context()
        self.runner.respond("apt-get", "install", returncode=100, stderr="Could not get lock")
        self.runner.respond("dpkg-query", returncode=1)
        with mock.patch("webhost_provision.steps.time.sleep"):
            with self.assertRaises(RetriableError):
                self.run_firewall()
        self.assertEqual(self.runner.count("apt-get", "install"), 5)


class TestRateLimiting(FirewallTestCase):
    def test_block_inserted_in_filter_table_before_commit(self):
        self.assertTrue(self.module.setup_rate_limiting())
        lines = self.settings.UFW_BEFORE_RULES.read_text().splitlines()
        begin = lines.index("# BEGIN RATE_LIMIT")
        end = lines.index("# END RATE_LIMIT")
        self.assertEqual(lines[end + 1], "COMMIT")
        self.assertTrue(any("HTTP_RATE_LIMIT" in line for line in lines[begin:end]))
        self.assertTrue(self.runner.ran("iptables-restore", "--test"))
        self.assertIn("HTTPS_RATE_LIMIT", self.runner.inputs[-1])

    def test_validated_rules_declare_ufw_framework_chains(self):
        self.module.setup_rate_limiting()
        tested = self.runner.inputs[self.runner.calls.index(["iptables-restore", "--test"])]
        lines = tested.splitlines()
        declared = {line.split()[0][1:] for line in lines if line.startswith(":")}
        jumps = {line.split(" -j ")[1].split()[0] for line in lines if " -j ufw-" in line}
        self.assertIn("ufw-logging-deny", jumps)
        self.assertLessEqual(jumps, declared)
        self.assertEqual(lines.index(":ufw-logging-deny - [0:0]"), lines.index("*filter") + 1)
        self.assertNotIn("ufw-logging-deny - [0:0]", self.settings.UFW_BEFORE_RULES.read_text())

    def test_second_run_changes_nothing(self):
        self.module.setup_rate_limiting()
        first = self.settings.UFW_BEFORE_RULES.read_text()
        self.runner.clear()

        self.assertFalse(self.module.setup_rate_limiting())
        self.assertEqual(self.settings.UFW_BEFORE_RULES.read_text(), first)
        self.assertEqual(first.count("# BEGIN RATE_LIMIT"), 1)
        self.assertFalse(self.runner.ran("iptables-restore"))

    def test_rejected_rules_are_removed(self):
        self.runner.respond("iptables-restore", returncode=2, stderr="line 12 failed")
        with self.assertRaises(StagedConfigError):
            self.module.setup_rate_limiting()
        self.assertEqual(self.settings.UFW_BEFORE_RULES.read_text(), BEFORE_RULES)

    def test_missing_commit_anchor_fails_without_change(self):
        broken = BEFORE_RULES.replace("COMMIT\n", "")
        self.write(self.settings.UFW_BEFORE_RULES, broken)
        with self.assertRaises(BlockAnchorError):
            self.module.setup_rate_limiting()
        self.assertEqual(self.settings.UFW_BEFORE_RULES.read_text(), broken)


class TestChainDeclarations(unittest.TestCase):
    def test_missing_chains_declared_after_filter(self):
        rules = "*filter\n:ufw-before-input - [0:0]\n-A ufw-before-input -j ufw-logging-deny\nCOMMIT\n"
        self.assertEqual(
            declare_ufw_chains(rules),
            "*filter\n:ufw-logging-deny - [0:0]\n:ufw-before-input - [0:0]\n"
            "-A ufw-before-input -j ufw-logging-deny\nCOMMIT\n",
        )

    def test_complete_rules_untouched(self):
        rules = "*filter\n:ufw-before-input - [0:0]\n-A ufw-before-input -i lo -j ACCEPT\nCOMMIT\n"
        self.assertEqual(declare_ufw_chains(rules), rules)

    def test_commented_rules_ignored(self):
        rules = "*filter\n#-A ufw-before-input -j ufw-user-limit\nCOMMIT\n"
        self.assertEqual(declare_ufw_chains(rules), rules)

    def test_stock_before_rules(self):
        declared = declare_ufw_chains(BEFORE_RULES)
        self.assertEqual(declared.count(":ufw-logging-deny - [0:0]"), 1)
        self.assertEqual(declared.count(":ufw-not-local - [0:0]"), 1)


if __name__ == "__main__":
    unittest.main()
