import unittest

from webhost_provision.errors import StagedConfigError
from webhost_provision.modules import Fail2banModule, UpdatesModule

from tests.support import HostTestCase


class TestFail2ban(HostTestCase):
    def setUp(self):
        super().setUp()
        self.mark_installed()
        self.jail = self.settings.FAIL2BAN_DIR / "jail.local"

    def test_jails_written_and_service_restarted(self):
        Fail2banModule(self.ctx).run()
        jail = self.jail.read_text()
        self.assertIn("destemail = admin@example.com", jail)
        self.assertIn("[sshd]\nenabled  = true\nport     = 2222\n", jail)
        for section in ("[nginx-http-auth]", "[nginx-botsearch]", "[recidive]"):
            self.assertIn(section, jail)
        self.assertTrue(self.runner.ran("fail2ban-client", "-t"))
        self.assertTrue(self.runner.ran("systemctl", "enable", "fail2ban"))
        self.assertTrue(self.runner.ran("systemctl", "restart", "fail2ban"))
        self.assertTrue(self.ctx.state.exists("FAIL2BAN_COMPLETE"))

    def test_previous_jail_restored_on_invalid_configuration(self):
        self.write(self.jail, "[DEFAULT]\nbantime = 600\n")
        self.runner.respond("fail2ban-client", "-t", returncode=255, stderr="bad jail")
        with self.assertRaises(StagedConfigError):
            Fail2banModule(self.ctx).run()
        self.assertEqual(self.jail.read_text(), "[DEFAULT]\nbantime = 600\n")
        self.assertFalse(self.runner.ran("systemctl", "restart", "fail2ban"))

    def test_rerun_restarts_only_a_stopped_service(self):
        Fail2banModule(self.ctx).run()
        self.runner.clear()
        Fail2banModule(self.ctx).run()
        self.assertFalse(self.runner.ran("systemctl", "restart"))

        self.runner.respond("systemctl", "is-active", "--quiet", "fail2ban", returncode=3)
        Fail2banModule(self.ctx).run()
        self.assertTrue(self.runner.ran("systemctl", "restart", "fail2ban"))


class TestUpdates(HostTestCase):
    def setUp(self):
        super().setUp()
        self.mark_installed()
        self.apt_conf = self.settings.APT_CONF_DIR

    def test_policy_written_and_service_enabled(self):
        UpdatesModule(self.ctx).run()
        auto = (self.apt_conf / "20auto-upgrades").read_text()
        unattended = (self.apt_conf / "50unattended-upgrades").read_text()
        self.assertIn('APT::Periodic::Unattended-Upgrade "1";', auto)
        self.assertIn('Unattended-Upgrade::Mail "admin@example.com";', unattended)
        self.assertIn('Unattended-Upgrade::Automatic-Reboot "false";', unattended)
        self.assertTrue(self.runner.ran("apt-config", "dump"))
        self.assertTrue(self.runner.ran("systemctl", "restart", "unattended-upgrades"))
        self.assertTrue(self.ctx.state.exists("UPDATES_COMPLETE"))

    def test_replaced_policy_backed_up_outside_apt_conf_dir(self):
        self.write(self.apt_conf / "50unattended-upgrades", "// stock\n")
        UpdatesModule(self.ctx).run()

        self.assertEqual(
            sorted(p.name for p in self.apt_conf.iterdir()),
            ["20auto-upgrades", "50unattended-upgrades"],
        )
        backups = list(self.settings.BACKUP_DIR.glob("50unattended-upgrades.backup.*"))
        self.assertEqual(len(backups), 1)
        self.assertEqual(backups[0].read_text(), "// stock\n")

    def test_rejected_policy_is_removed(self):
        self.runner.respond("apt-config", returncode=100, stderr="Syntax error")
        with self.assertRaises(StagedConfigError):
            UpdatesModule(self.ctx).run()
        self.assertFalse((self.apt_conf / "20auto-upgrades").exists())
        self.assertFalse((self.apt_conf / "50unattended-upgrades").exists())


if __name__ == "__main__":
    unittest.main()
