import tempfile
import unittest
from pathlib import Path
from types import SimpleNamespace
from unittest import mock

import verify


class LocateArtifactTests(unittest.TestCase):
    def setUp(self):
        self._temp = tempfile.TemporaryDirectory()
        self.source = Path(self._temp.name)

    def tearDown(self):
        self._temp.cleanup()

    def _touch(self, relative: str) -> Path:
        path = self.source / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"x")
        return path

    def test_expected_path_wins(self):
        expected = self._touch("build/bin/firmware-btc.bin")
        self._touch("build/bin/other.bin")
        self.assertEqual(
            verify.locate_build_artifact(self.source, "build/bin/firmware-btc.bin", "build/bin/*.bin"), expected
        )

    def test_single_glob_match_is_used_when_expected_is_missing(self):
        found = self._touch("android/app/build/outputs/apk/release/app-arm64-v8a-release-unsigned.apk")
        self.assertEqual(
            verify.locate_build_artifact(
                self.source, "android/app/build/outputs/apk/release/missing.apk", "android/**/*arm64-v8a*.apk"
            ),
            found,
        )

    def test_ambiguous_glob_is_rejected(self):
        self._touch("core/build/firmware/pro.4.9.0-a.bin")
        self._touch("core/build/firmware/pro.4.9.0-b.bin")
        with self.assertRaises(verify.BuildArtifactNotFoundError):
            verify.locate_build_artifact(self.source, None, "core/build/firmware/pro.*.bin")

    def test_missing_artifact_lists_nearest_directory(self):
        self._touch("build/bin/unrelated.txt")
        with self.assertRaises(verify.BuildArtifactNotFoundError) as ctx:
            verify.locate_build_artifact(self.source, "build/bin/firmware.bin", None)
        self.assertIn("unrelated.txt", str(ctx.exception))


class ContainerBuilderTests(unittest.TestCase):
    def test_image_command_builds_from_dockerfile(self):
        builder = verify.ContainerBuilder("docker", verify.PRODUCTS["bitbox02"])
        command = builder.image_command(Path("/src"))
        self.assertEqual(
            command,
            ["docker", "build", "--force-rm", "-t", "bitbox02-firmware", "-f", "/src/Dockerfile", "--platform", "linux/amd64", "/src"],
        )

    def test_image_command_pulls_pinned_image(self):
        builder = verify.ContainerBuilder("podman", verify.PRODUCTS["zeus"])
        command = builder.image_command(Path("/src"))
        self.assertEqual(command[:2], ["podman", "pull"])
        self.assertIn("@sha256:", command[2])

    def test_coldcard_run_command_mounts_source_read_only(self):
        product = verify.PRODUCTS["coldcard"]
        target = verify.build_target("coldcard", product, version="2025-02-19T1804-v5.4.2", variant="mk4")
        builder = verify.ContainerBuilder("docker", product)
        with tempfile.TemporaryDirectory() as temp_dir:
            source = Path(temp_dir).resolve()
            command = builder.run_command(source, target.fields)
            self.assertTrue((source / "stm32" / "built").is_dir())

        self.assertIn("--privileged", command)
        self.assertIn(f"{source}:/work/src:ro", command)
        self.assertIn(f"{source / 'stm32' / 'built'}:/work/built", command)
        self.assertEqual(command[-1], "cd /work && sh src/stm32/repro-build.sh 5.4.2 mk4 MK4-Makefile")
        self.assertNotIn("-it", command)

    def test_interactive_run_appends_user_hook(self):
        product = verify.PRODUCTS["phoenix"]
        builder = verify.ContainerBuilder("podman", product, interactive=True)
        command = builder.run_command(Path("/src"), {"version_name": "2.4.0", "version_code": "95"})
        self.assertIn("-it", command)
        self.assertTrue(command[-1].endswith('; echo "CTRL-D to continue"; bash'))

    def test_env_values_are_passed(self):
        builder = verify.ContainerBuilder("docker", verify.PRODUCTS["trezor-safe5"])
        command = builder.run_command(Path("/src"), {"bitcoin_only": "1"})
        self.assertIn("TREZOR_MODEL=T3T1", command)
        self.assertIn("BITCOIN_ONLY=1", command[-1])

    def test_build_runs_image_then_container_and_finds_artifact(self):
        product = verify.PRODUCTS["bitbox02"]
        target = verify.build_target("bitbox02", product, version="9.21.0", variant="btc")
        builder = verify.ContainerBuilder("docker", product)
        with tempfile.TemporaryDirectory() as temp_dir:
            source = Path(temp_dir)

            def fake_run(command, action, cwd=None, env=None):
                if action == "Container build run":
                    artifact = source / "build" / "bin" / "firmware-btc.bin"
                    artifact.parent.mkdir(parents=True)
                    artifact.write_bytes(b"\x00" * 32)
                return SimpleNamespace(stdout="", stderr="", returncode=0)

            with mock.patch("verify.run_checked_command", side_effect=fake_run) as run_checked_command, mock.patch(
                "builtins.print"
            ):
                artifact = builder.build(source, target)

            self.assertEqual(artifact.path, source / "build" / "bin" / "firmware-btc.bin")
            self.assertEqual(artifact.size, 32)
        actions = [call.args[1] for call in run_checked_command.call_args_list]
        self.assertEqual(actions, ["Container image build", "Container build run"])
        self.assertEqual(builder.images(), ["bitbox02-firmware"])

    def test_failed_container_run_is_a_build_error(self):
        product = verify.PRODUCTS["bitbox02"]
        target = verify.build_target("bitbox02", product, version="9.21.0")
        builder = verify.ContainerBuilder("docker", product)

        def fake_run(command, action, cwd=None, env=None):
            if action == "Container build run":
                raise verify.CommandError("make failed", command, 2)
            return SimpleNamespace(stdout="", stderr="", returncode=0)

        with tempfile.TemporaryDirectory() as temp_dir, mock.patch(
            "verify.run_checked_command", side_effect=fake_run
        ), mock.patch("builtins.print"):
            with self.assertRaises(verify.BuildError):
                builder.build(Path(temp_dir), target)


class RunCheckedCommandTests(unittest.TestCase):
    def test_failure_includes_output_tail(self):
        completed = SimpleNamespace(returncode=2, stdout="line1\nline2\n", stderr="boom\n")
        with mock.patch("verify.subprocess.run", return_value=completed):
            with self.assertRaises(verify.CommandError) as ctx:
                verify.run_checked_command(["make"], "Build firmware")
        self.assertIn("Build firmware failed", str(ctx.exception))
        self.assertIn("boom", str(ctx.exception))
        self.assertEqual(ctx.exception.returncode, 2)

    def test_missing_binary_is_a_command_error(self):
        with mock.patch("verify.subprocess.run", side_effect=FileNotFoundError("docker")):
            with self.assertRaises(verify.CommandError):
                verify.run_checked_command(["docker", "info"], "Probe")


class FakeBuilder(verify.Builder):
    def __init__(self, relative: str, data: bytes, also_write=None):
        self.relative = relative
        self.data = data
        self.also_write = also_write or {}
        self.seen_files = []

    def build(self, source_dir, target):
        self.seen_files = sorted(str(path.relative_to(source_dir)) for path in source_dir.rglob("*") if path.is_file())
        for relative, data in {self.relative: self.data, **self.also_write}.items():
            path = source_dir / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        return verify.describe_artifact(source_dir / self.relative)


class PipelineTests(unittest.TestCase):
    def setUp(self):
        self._temp = tempfile.TemporaryDirectory()
        self.root = Path(self._temp.name)

    def tearDown(self):
        self._temp.cleanup()

    def _config(self, key, product, target, reference_path=None):
        return verify.RunConfig(
            target=target,
            product=product,
            engine="docker",
            work_dir=self.root / "work",
            reference_path=reference_path,
        )

    def _fake_clone(self, target, product, dest, sleep=None):
        dest.mkdir(parents=True)
        return "abc123"

    def test_bitbox02_pipeline_downloads_and_compares(self):
        product = verify.PRODUCTS["bitbox02"]
        target = verify.build_target("bitbox02", product, version="9.21.0", variant="btc")
        payload = b"\x42" * 1000

        def fake_download(urls, target_path, hint=None, sleep=None):
            self.assertTrue(urls[0].endswith("firmware-btc-only%2Fv9.21.0/firmware-bitbox02-btconly.v9.21.0.signed.bin"))
            Path(target_path).parent.mkdir(parents=True, exist_ok=True)
            Path(target_path).write_bytes(b"\x01" * 588 + payload)
            return str(target_path)

        with mock.patch("verify.clone_source", side_effect=self._fake_clone), mock.patch(
            "verify.tag_signature_summary", return_value=["Tag type: annotated"]
        ), mock.patch("verify.download_with_url_fallback", side_effect=fake_download), mock.patch("builtins.print"):
            outcome = verify.run_pipeline(
                self._config("bitbox02", product, target), builder=FakeBuilder("build/bin/firmware-btc.bin", payload)
            )

        self.assertEqual(outcome.result.verdict, verify.VERDICT_REPRODUCIBLE)
        self.assertEqual(outcome.commit, "abc123")
        self.assertIn("deviceHash", outcome.result.extra_hashes)

    def test_coldcard_pipeline_stages_release_and_uses_built_check_file(self):
        product = verify.PRODUCTS["coldcard"]
        version = "2025-02-19T1804-v5.4.2"
        target = verify.build_target("coldcard", product, version=version, variant="mk4")
        signed = bytearray(b"\x10" * 0x5000)
        check = bytearray(signed)
        check[0x3F80:0x4000] = b"\xff" * 128
        builder = FakeBuilder(
            "stm32/built/firmware-signed.bin", bytes(signed), also_write={"stm32/built/check-fw.bin": bytes(check)}
        )

        def fake_download(urls, target_path, hint=None, sleep=None):
            Path(target_path).parent.mkdir(parents=True, exist_ok=True)
            Path(target_path).write_bytes(b"dfu")
            return str(target_path)

        with mock.patch("verify.clone_source", side_effect=self._fake_clone), mock.patch(
            "verify.tag_signature_summary", return_value=[]
        ), mock.patch("verify.download_with_url_fallback", side_effect=fake_download), mock.patch("builtins.print"):
            outcome = verify.run_pipeline(self._config("coldcard", product, target), builder=builder)

        self.assertIn(f"releases/{version}-mk4-coldcard.dfu", builder.seen_files)
        self.assertEqual(outcome.reference.path.name, "check-fw.bin")
        self.assertEqual(outcome.result.verdict, verify.VERDICT_REPRODUCIBLE)

    def test_apk_pipeline_compares_unzipped_trees(self):
        import zipfile

        product = verify.PRODUCTS["phoenix"]
        metadata = verify.ApkMetadata(app_id="fr.acinq.phoenix.mainnet", version_name="2.4.0", version_code="95")
        target = verify.build_target("phoenix", product, metadata=metadata)

        def apk_bytes(signature: bytes) -> bytes:
            path = self.root / f"tmp-{len(signature)}.apk"
            with zipfile.ZipFile(path, "w") as zf:
                zf.writestr("classes.dex", b"dex")
                zf.writestr("META-INF/CERT.RSA", signature)
            return path.read_bytes()

        reference = self.root / "official.apk"
        reference.write_bytes(apk_bytes(b"official-signature"))
        builder = FakeBuilder(
            "phoenix-android/build/outputs/apk/release/phoenix-95-2.4.0-mainnet-release.apk", apk_bytes(b"x")
        )

        with mock.patch("verify.clone_source", side_effect=self._fake_clone), mock.patch(
            "verify.tag_signature_summary", return_value=[]
        ), mock.patch("builtins.print"):
            outcome = verify.run_pipeline(self._config("phoenix", product, target, reference), builder=builder)

        self.assertEqual(outcome.result.verdict, verify.VERDICT_REPRODUCIBLE)
        self.assertEqual(outcome.result.ignored_count, 1)
        self.assertEqual([path.name for path in outcome.comparison_paths], ["fromReference", "fromBuild"])


class CleanupTests(unittest.TestCase):
    def test_cleanup_run_removes_paths_and_images_best_effort(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            work = Path(temp_dir) / "wallet-verify-zeus"
            (work / "nested").mkdir(parents=True)
            stray = Path(temp_dir) / "stray.bin"
            stray.write_bytes(b"x")

            with mock.patch("verify.subprocess.run", side_effect=[OSError("no engine"), None]) as run, mock.patch(
                "builtins.print"
            ):
                verify.cleanup_run("docker", [work, stray, Path(temp_dir) / "missing"], ["phoenix_build"])

            self.assertFalse(work.exists())
            self.assertFalse(stray.exists())
        commands = [call.args[0] for call in run.call_args_list]
        self.assertEqual(commands, [["docker", "rmi", "-f", "phoenix_build"], ["docker", "image", "prune", "-f"]])

    def test_cleanup_only_removes_previous_runs(self):
        with tempfile.TemporaryDirectory() as temp_dir, mock.patch("verify.WORK_ROOT", temp_dir), mock.patch(
            "verify.cleanup_run"
        ) as cleanup_run, mock.patch("builtins.print"):
            (Path(temp_dir) / "wallet-verify-phoenix").mkdir()
            (Path(temp_dir) / "unrelated").mkdir()
            verify.cleanup_only("podman", "phoenix", verify.PRODUCTS["phoenix"])

        cleanup_run.assert_called_once_with(
            "podman", [Path(temp_dir) / "wallet-verify-phoenix"], ["phoenix_build"]
        )

    def test_cleanup_only_keeps_products_sharing_a_prefix(self):
        with tempfile.TemporaryDirectory() as temp_dir, mock.patch("verify.WORK_ROOT", temp_dir), mock.patch(
            "verify.subprocess.run"
        ), mock.patch("builtins.print"):
            onekey = Path(temp_dir) / "wallet-verify-onekey"
            onekey_pro = Path(temp_dir) / "wallet-verify-onekey-pro"
            (onekey / "source").mkdir(parents=True)
            onekey_pro.mkdir()
            (onekey_pro / "keep.bin").write_bytes(b"pro")

            verify.cleanup_only("docker", "onekey", verify.PRODUCTS["onekey"])

            self.assertFalse(onekey.exists())
            self.assertEqual((onekey_pro / "keep.bin").read_bytes(), b"pro")


if __name__ == "__main__":
    unittest.main()
