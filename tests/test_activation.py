import os
import socket
import tempfile
import unittest
import unittest.mock
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path

import nhctl
from fakes import (fake_builder, fake_differ, fake_home, fake_sudo, fake_toplevel,
                   make_profile, read_lines)

_DEVNULL = open(os.devnull, "w")

TOOL = nhctl.ToolInfo('nix', "nix (Nix) 2.31.0", frozenset({"nix-command", "flakes"}))


class CoordinatorTestCase(unittest.TestCase):
    """
    A fake NixOS machine in a temporary directory: one existing generation,
    a builder producing a new closure, nvd, sudo and switch-to-configuration
    all as shell scripts.
    """

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(os.path.realpath(self._tmp.name))
        self._suppress = redirect_stdout(_DEVNULL)
        self._suppress.__enter__()
        self._suppress_err = redirect_stderr(_DEVNULL)
        self._suppress_err.__enter__()

        self.bin = self.root / "bin"
        self.switch_log = self.root / "switch.log"
        self.sudo_log = self.root / "sudo.log"
        self.builder_args = self.root / "builder.args"
        self.fail_flag = self.root / "fail-activation"

        self.old = fake_toplevel(self.root, "old-system", self.switch_log)
        self.new = fake_toplevel(self.root, "new-system", self.switch_log,
                                 specialisations=("gaming",), fail_flag=self.fail_flag)
        self.profile = make_profile(self.root / "profiles", "system", [self.old])
        self.marker = self.root / "etc-specialisation"
        self.paths = nhctl.ProfilePaths(profile=self.profile, marker=self.marker)

        self.environ = {
            "PATH": os.environ.get("PATH", "/usr/bin:/bin"),
            "HOME": str(self.root),
            "USER": "alice",
            "AWS_SECRET_ACCESS_KEY": "hunter2",
        }
        self.programs = nhctl.Programs(
            nix=str(fake_builder(self.bin, self.new, self.builder_args)),
            differ=(str(fake_differ(self.bin, changes=2)), "diff"),
            sudo=str(fake_sudo(self.bin, self.sudo_log)),
        )
        self.confirmations = []

    def tearDown(self):
        self._suppress_err.__exit__(None, None, None)
        self._suppress.__exit__(None, None, None)
        self._tmp.cleanup()

    def request(self, mode='switch', **kwargs):
        target = kwargs.pop("target", nhctl.TargetInput(installable="/flake", hostname=socket.gethostname()))
        kwargs.setdefault("nom", False)
        kwargs.setdefault("out_link", self.root / "result")
        return nhctl.ActivationRequest(platform='os', mode=mode, target=target, **kwargs)

    def coordinator(self, request, answer=True, euid=1000, programs=None, tool_info=TOOL):
        def confirm(report):
            self.confirmations.append(report)
            return answer

        programs = programs or self.programs
        return nhctl.ActivationCoordinator(
            request,
            environ=self.environ,
            confirm=confirm,
            programs=programs,
            tool_info=tool_info,
            registry=nhctl.GenerationRegistry(self.profile, lock_dir=self.root / "run"),
            paths=self.paths,
            elevator=nhctl.Elevator(self.environ, request.preserve_env, program=programs.sudo, euid=euid),
            euid=euid,
        )

    def generation_numbers(self):
        return [g.number for g in nhctl.GenerationRegistry(self.profile).generations()]


class TestSwitch(CoordinatorTestCase):
    def test_switch_with_confirmation_commits_next_generation(self):
        coordinator = self.coordinator(self.request(confirm='auto'))
        outcome = coordinator.run()

        self.assertIsInstance(outcome, nhctl.Committed)
        self.assertEqual(outcome.generation.number, 2)
        self.assertEqual(outcome.generation.closure, self.new)
        self.assertEqual(coordinator.history, [
            'resolving', 'building', 'diffing', 'awaiting-confirmation', 'activating', 'committing', 'done',
        ])
        self.assertEqual(len(self.confirmations), 1)
        self.assertTrue(self.confirmations[0].has_changes())
        self.assertEqual(len(self.confirmations[0].changes), 2)
        self.assertEqual(read_lines(self.switch_log), ["test", "boot"])
        self.assertEqual(self.generation_numbers(), [1, 2])
        self.assertEqual(Path(os.path.realpath(self.root / "result")), self.new)

    def test_elevated_commands_never_see_ambient_secrets(self):
        self.coordinator(self.request()).run()
        sudo_calls = read_lines(self.sudo_log)
        self.assertEqual(len(sudo_calls), 2)
        self.assertTrue(all(call.startswith("-- env -i PATH=") for call in sudo_calls))
        self.assertFalse(any("hunter2" in call for call in sudo_calls))
        activation_env = Path(f"{self.switch_log}.env").read_text()
        self.assertNotIn("hunter2", activation_env)
        self.assertIn(f"PATH={nhctl.ELEVATED_PATH}", activation_env)

    def test_no_changes_skips_confirmation(self):
        programs = nhctl.Programs(
            nix=self.programs.nix,
            differ=(str(fake_differ(self.root / "bin2", changes=0)), "diff"),
            sudo=self.programs.sudo,
        )
        outcome = self.coordinator(self.request(confirm='auto'), answer=False, programs=programs).run()
        self.assertIsInstance(outcome, nhctl.Committed)
        self.assertEqual(self.confirmations, [])

    def test_declined_confirmation_writes_nothing(self):
        coordinator = self.coordinator(self.request(confirm='always'), answer=False)
        outcome = coordinator.run()

        self.assertIsInstance(outcome, nhctl.Failed)
        self.assertEqual(outcome.kind, "UserAborted")
        self.assertEqual(outcome.stage, 'awaiting-confirmation')
        self.assertEqual(outcome.closure.path, self.new)
        self.assertEqual(coordinator.state, 'failed')
        self.assertEqual(self.generation_numbers(), [1])
        self.assertFalse(self.sudo_log.exists())
        self.assertEqual(read_lines(self.switch_log), [])

    def test_default_policy_asks_before_activating_changes(self):
        coordinator = self.coordinator(self.request(), answer=False)
        outcome = coordinator.run()
        self.assertIsInstance(outcome, nhctl.Failed)
        self.assertEqual(outcome.kind, "UserAborted")
        self.assertEqual(len(self.confirmations), 1)
        self.assertEqual(self.generation_numbers(), [1])

    def test_dry_run_stops_after_diff(self):
        outcome = self.coordinator(self.request(dry=True, confirm='always')).run()
        self.assertIsInstance(outcome, nhctl.BuiltOnly)
        self.assertEqual(self.confirmations, [])
        self.assertEqual(self.generation_numbers(), [1])
        self.assertFalse(self.sudo_log.exists())

    def test_boot_only_commits(self):
        outcome = self.coordinator(self.request('boot')).run()
        self.assertIsInstance(outcome, nhctl.Committed)
        self.assertEqual(read_lines(self.switch_log), ["boot"])
        self.assertEqual(self.generation_numbers(), [1, 2])

    def test_test_mode_activates_without_recording(self):
        outcome = self.coordinator(self.request('test')).run()
        self.assertIsInstance(outcome, nhctl.Activated)
        self.assertEqual(read_lines(self.switch_log), ["test"])
        self.assertEqual(self.generation_numbers(), [1])


class TestBuildOnly(CoordinatorTestCase):
    def test_build_vm_never_elevates_or_records(self):
        request = self.request('build-vm', target=nhctl.TargetInput(installable="/flake", hostname="box"))
        coordinator = self.coordinator(request)
        with unittest.mock.patch.object(nhctl.Elevator, "run") as elevate:
            outcome = coordinator.run()

        self.assertIsInstance(outcome, nhctl.BuiltOnly)
        self.assertEqual(outcome.closure.path, self.new)
        self.assertEqual(coordinator.state, 'done')
        elevate.assert_not_called()
        self.assertEqual(self.generation_numbers(), [1])
        self.assertIn("/flake#nixosConfigurations.box.config.system.build.vm", self.builder_args.read_text())

    def test_build_failure_keeps_diagnostics(self):
        programs = nhctl.Programs(
            nix=str(fake_builder(self.root / "bin2", self.new, self.builder_args, fail=True)),
            differ=self.programs.differ,
            sudo=self.programs.sudo,
        )
        outcome = self.coordinator(self.request(), programs=programs).run()
        self.assertIsInstance(outcome, nhctl.Failed)
        self.assertEqual(outcome.stage, 'building')
        self.assertEqual(outcome.kind, "BuildError")
        self.assertIn("error: attribute 'toplevel' missing", outcome.diagnostics)
        self.assertIsNone(outcome.closure)

    def test_unwritable_out_link_fails_the_build(self):
        blocker = self.root / "not-a-dir"
        blocker.write_text("")
        outcome = self.coordinator(self.request(out_link=blocker / "result")).run()
        self.assertIsInstance(outcome, nhctl.Failed)
        self.assertEqual(outcome.stage, 'building')
        self.assertEqual(outcome.kind, "BuildError")
        self.assertIn("Failed to publish", outcome.message)
        self.assertEqual(self.generation_numbers(), [1])
        self.assertFalse(self.sudo_log.exists())

    def test_legacy_file_build(self):
        programs = nhctl.Programs(
            nix=str(self.root / "no-such-nix"),
            nix_build=str(fake_builder(self.root / "bin2", self.new, self.builder_args, name="nix-build")),
        )
        target = nhctl.TargetInput(installable="machine", file="default.nix", overrides=("--arg", "x", "1"),
                                   hostname="box")
        tool = nhctl.ToolInfo('nix', "nix (Nix) 2.31.0", frozenset())
        outcome = self.coordinator(self.request('build', target=target), programs=programs, tool_info=tool).run()
        self.assertIsInstance(outcome, nhctl.BuiltOnly)
        self.assertTrue(self.builder_args.read_text().startswith(
            "default.nix -A machine.config.system.build.toplevel --arg x 1 --out-link "
        ))


class TestPreflight(CoordinatorTestCase):
    def test_missing_features_fail_before_building(self):
        tool = nhctl.ToolInfo('nix', "nix (Nix) 2.31.0", frozenset({"nix-command"}))
        outcome = self.coordinator(self.request(), tool_info=tool).run()
        self.assertIsInstance(outcome, nhctl.Failed)
        self.assertEqual(outcome.stage, 'resolving')
        self.assertEqual(outcome.kind, "MissingFeature")
        self.assertFalse(self.builder_args.exists())

    def test_no_checks_skips_the_gate(self):
        tool = nhctl.ToolInfo('nix', "nix (Nix) 2.31.0", frozenset())
        outcome = self.coordinator(self.request('build', no_checks=True), tool_info=tool).run()
        self.assertIsInstance(outcome, nhctl.BuiltOnly)

    def test_root_is_refused(self):
        outcome = self.coordinator(self.request(), euid=0).run()
        self.assertEqual(outcome.kind, "ForbiddenAsRoot")
        self.assertFalse(self.builder_args.exists())

    def test_no_target(self):
        outcome = self.coordinator(self.request(target=nhctl.TargetInput(hostname="box"))).run()
        self.assertEqual(outcome.kind, "NoTargetSpecified")
        self.assertEqual(outcome.stage, 'resolving')


class TestSpecialisations(CoordinatorTestCase):
    def test_marker_selects_candidate_specialisation(self):
        self.marker.write_text("gaming\n")
        outcome = self.coordinator(self.request()).run()
        self.assertIsInstance(outcome, nhctl.Committed)
        self.assertEqual(outcome.generation.specialisation, "gaming")
        # the specialisation is activated, the base goes into the boot menu
        self.assertEqual(read_lines(self.switch_log), ["gaming:test", "boot"])

    def test_unknown_specialisation_fails_before_activation(self):
        outcome = self.coordinator(self.request(specialisation="travel")).run()
        self.assertEqual(outcome.kind, "UnknownSpecialisation")
        self.assertEqual(outcome.stage, 'activating')
        self.assertEqual(read_lines(self.switch_log), [])
        self.assertEqual(self.generation_numbers(), [1])

    def test_ignore_specialisation(self):
        self.marker.write_text("gaming\n")
        self.coordinator(self.request(no_specialisation=True)).run()
        self.assertEqual(read_lines(self.switch_log), ["test", "boot"])


class TestResume(CoordinatorTestCase):
    def test_failed_activation_can_be_resumed_without_rebuilding(self):
        self.fail_flag.touch()
        failed = self.coordinator(self.request()).run()
        self.assertIsInstance(failed, nhctl.Failed)
        self.assertEqual(failed.stage, 'activating')
        self.assertEqual(failed.kind, "ActivationError")
        self.assertIn("activation broke", failed.diagnostics)
        self.assertEqual(failed.closure.path, self.new)
        self.assertEqual(self.generation_numbers(), [1])

        self.fail_flag.unlink()
        self.builder_args.unlink()
        coordinator = self.coordinator(self.request())
        outcome = coordinator.run(resume=failed.closure)
        self.assertIsInstance(outcome, nhctl.Committed)
        self.assertEqual(outcome.generation.number, 2)
        self.assertFalse(self.builder_args.exists())
        self.assertNotIn('building', coordinator.history)

    def test_commit_failure_is_reported_without_reversal(self):
        coordinator = self.coordinator(self.request())
        with unittest.mock.patch.object(nhctl.GenerationRegistry, "append",
                                        side_effect=nhctl.RegistryError("disk full")):
            outcome = coordinator.run()
        self.assertIsInstance(outcome, nhctl.Failed)
        self.assertEqual(outcome.stage, 'committing')
        self.assertEqual(outcome.kind, "RegistryError")
        self.assertEqual(outcome.closure.path, self.new)
        # activated system is left running
        self.assertEqual(read_lines(self.switch_log), ["test"])


class TestRollback(CoordinatorTestCase):
    def setUp(self):
        super().setUp()
        os.unlink(self.profile)
        os.symlink(self.new, self.root / "profiles" / "system-2-link")
        os.symlink("system-2-link", self.profile)

    def test_rollback_to_previous_generation(self):
        coordinator = self.coordinator(self.request('rollback'))
        outcome = coordinator.rollback()
        self.assertIsInstance(outcome, nhctl.Committed)
        self.assertEqual(outcome.generation.number, 1)
        self.assertEqual(os.readlink(self.profile), "system-1-link")
        self.assertEqual(read_lines(self.switch_log), ["switch"])
        self.assertEqual(self.generation_numbers(), [1, 2])
        self.assertNotIn('building', coordinator.history)

    def test_rollback_to_missing_generation(self):
        outcome = self.coordinator(self.request('rollback')).rollback(to=9)
        self.assertEqual(outcome.kind, "NoSuchGeneration")
        self.assertEqual(os.readlink(self.profile), "system-2-link")

    def test_failed_rollback_restores_profile(self):
        self.fail_flag.touch()
        # roll "forward" to the closure whose activation fails
        os.unlink(self.profile)
        os.symlink("system-1-link", self.profile)
        coordinator = self.coordinator(self.request('rollback'))
        outcome = coordinator.rollback(to=2)

        self.assertIsInstance(outcome, nhctl.Failed)
        self.assertTrue(outcome.rolled_back)
        self.assertEqual(outcome.stage, 'activating')
        self.assertEqual(coordinator.state, 'rolled-back')
        self.assertEqual(os.readlink(self.profile), "system-1-link")
        self.assertEqual(self.generation_numbers(), [1, 2])


class TestHome(CoordinatorTestCase):
    def test_home_rollback_is_unsupported(self):
        request = nhctl.ActivationRequest(platform='home', mode='rollback', nom=False)
        outcome = self.coordinator(request).rollback()
        self.assertIsInstance(outcome, nhctl.Failed)
        self.assertEqual(outcome.kind, "ResolveError")
        self.assertEqual(outcome.stage, 'resolving')
        self.assertFalse(read_lines(self.switch_log))

    def test_home_switch_runs_unelevated(self):
        activate_log = self.root / "activate.log"
        home = fake_home(self.root, "home-files", activate_log)
        profile_dir = self.root / "home-profiles"
        profile_dir.mkdir()
        programs = nhctl.Programs(
            nix=str(fake_builder(self.root / "bin2", home, self.builder_args)),
            differ=self.programs.differ,
            sudo=self.programs.sudo,
        )
        request = nhctl.ActivationRequest(
            platform='home',
            mode='switch',
            target=nhctl.TargetInput(installable="/flake", hostname="box"),
            backup_extension="bak",
            nom=False,
            out_link=self.root / "result",
        )
        paths = nhctl.ProfilePaths(profile=profile_dir / "home-manager", marker=self.root / "hm-marker")
        coordinator = nhctl.ActivationCoordinator(
            request,
            environ=self.environ,
            programs=programs,
            tool_info=TOOL,
            registry=nhctl.GenerationRegistry(paths.profile, lock_dir=self.root / "run"),
            paths=paths,
            lookup=lambda reference, name: name == "alice",
            euid=1000,
        )
        with unittest.mock.patch.object(nhctl.Elevator, "run") as elevate:
            outcome = coordinator.run()

        self.assertIsInstance(outcome, nhctl.Committed)
        self.assertEqual(outcome.generation.number, 1)
        elevate.assert_not_called()
        self.assertEqual(read_lines(activate_log), ["activate bak"])
        self.assertIn("/flake#homeConfigurations.alice.config.home.activationPackage",
                      self.builder_args.read_text())


if __name__ == "__main__":
    unittest.main()
