import os
import tempfile
import unittest
from pathlib import Path

import verify


class DirectoryCompareTests(unittest.TestCase):
    def setUp(self):
        self._temp = tempfile.TemporaryDirectory()
        self.root = Path(self._temp.name)
        self.left = self.root / "fromReference"
        self.right = self.root / "fromBuild"
        for tree in (self.left, self.right):
            self._write(tree / "classes.dex", b"dex")
            self._write(tree / "res" / "layout" / "main.xml", b"<xml/>")

    def tearDown(self):
        self._temp.cleanup()

    def _write(self, path: Path, content: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)

    def test_identical_trees_have_no_differences(self):
        self.assertEqual(verify.diff_trees(self.left, self.right), [])

    def test_differences_only_under_meta_inf_are_reproducible(self):
        self._write(self.left / "META-INF" / "CERT.RSA", b"signature")
        self._write(self.left / "META-INF" / "MANIFEST.MF", b"digest-a")
        self._write(self.right / "META-INF" / "MANIFEST.MF", b"digest-b")

        verdict, remaining, ignored = verify.compare_directories(self.left, self.right)

        self.assertEqual(verdict, verify.VERDICT_REPRODUCIBLE)
        self.assertEqual(remaining, [])
        self.assertEqual(ignored, 2)

    def test_one_differing_file_is_not_reproducible(self):
        self._write(self.right / "classes.dex", b"other dex")

        verdict, remaining, _ = verify.compare_directories(self.left, self.right)

        self.assertEqual(verdict, verify.VERDICT_NOT_REPRODUCIBLE)
        self.assertEqual(remaining, [f"Files {self.left / 'classes.dex'} and {self.right / 'classes.dex'} differ"])

    def test_same_size_same_mtime_content_change_is_detected(self):
        self._write(self.right / "classes.dex", b"DEX")
        stat = os.stat(self.left / "classes.dex")
        os.utime(self.right / "classes.dex", (stat.st_atime, stat.st_mtime))

        self.assertEqual(len(verify.diff_trees(self.left, self.right)), 1)

    def test_only_in_and_type_mismatch_are_reported(self):
        self._write(self.left / "extra.txt", b"x")
        self._write(self.right / "res" / "raw" / "new.bin", b"y")
        self._write(self.left / "res" / "raw", b"file here")

        lines = verify.diff_trees(self.left, self.right)

        self.assertIn(f"Only in {self.left}: extra.txt", lines)
        self.assertTrue(any("is a regular file while file" in line for line in lines))

    def test_review_patterns_downgrade_to_manual_verification(self):
        self._write(self.left / "assets" / "dexopt" / "baseline.prof", b"a")
        self._write(self.right / "assets" / "dexopt" / "baseline.prof", b"b")

        verdict, remaining, _ = verify.compare_directories(
            self.left, self.right, review_patterns=[r"assets/dexopt/baseline\.prof"]
        )

        self.assertEqual(verdict, verify.VERDICT_MANUAL)
        self.assertEqual(len(remaining), 1)

    def test_filter_differences_drops_blank_lines(self):
        lines = ["", "Only in a/META-INF: CERT.SF", "Files a/x and b/x differ", "  "]
        self.assertEqual(verify.filter_differences(lines), ["Files a/x and b/x differ"])


class BinaryCompareTests(unittest.TestCase):
    def setUp(self):
        self._temp = tempfile.TemporaryDirectory()
        self.root = Path(self._temp.name)

    def tearDown(self):
        self._temp.cleanup()

    def _artifact(self, name: str, data: bytes) -> verify.BuildArtifact:
        path = self.root / name
        path.write_bytes(data)
        return verify.describe_artifact(path)

    def test_identical_1000_byte_files_are_reproducible(self):
        data = bytes(range(250)) * 4
        built = self._artifact("built.bin", data)
        reference = self._artifact("reference.bin", data)

        result = verify.compare_artifacts(built, reference, {"normalize": [{"op": "strip", "offset": 0}]}, self.root / "cmp")

        self.assertEqual(result.verdict, verify.VERDICT_REPRODUCIBLE)
        self.assertEqual(result.built_normalized_hash, result.reference_normalized_hash)

    def test_signature_block_before_offset_588_is_stripped(self):
        body = bytes(range(250)) * 4
        built_data = bytearray(body)
        reference_data = bytearray(body)
        reference_data[523:588] = b"\x5a" * 65
        built = self._artifact("built.bin", bytes(built_data))
        reference = self._artifact("reference.bin", bytes(reference_data))

        stripped = verify.compare_artifacts(
            built, reference, {"normalize": [{"op": "strip", "offset": 588}]}, self.root / "stripped"
        )
        unstripped = verify.compare_artifacts(built, reference, {"normalize": []}, self.root / "raw")

        self.assertEqual(stripped.verdict, verify.VERDICT_REPRODUCIBLE)
        self.assertEqual(unstripped.verdict, verify.VERDICT_NOT_REPRODUCIBLE)
        self.assertEqual(unstripped.differences, ("bytes 523-587",))

    def test_strip_is_pure_and_hash_equality_decides(self):
        data = b"\x01\x02\x03\x04\x05"
        self.assertEqual(verify.strip_prefix(data, 2), data[2:])
        self.assertEqual(verify.strip_prefix(data, 2), verify.strip_prefix(data, 2))

    def test_size_mismatch_is_reported(self):
        built = self._artifact("built.bin", b"\x00" * 10)
        reference = self._artifact("reference.bin", b"\x00" * 12)

        result = verify.compare_artifacts(built, reference, {"normalize": []}, self.root / "cmp")

        self.assertEqual(result.verdict, verify.VERDICT_NOT_REPRODUCIBLE)
        self.assertIn("size 10 != 12", result.differences)
        self.assertIn("Size differs by 2 bytes", result.diagnostics)

    def test_bitbox02_comparison_reports_device_hash(self):
        payload = b"\x7f" * 400
        header = bytearray(588)
        header[392:396] = b"\x02\x00\x00\x00"
        reference = self._artifact("signed.bin", bytes(header) + payload)
        built = self._artifact("firmware-btc.bin", payload)

        result = verify.compare_artifacts(built, reference, verify.PRODUCTS["bitbox02"], self.root / "cmp")

        self.assertEqual(result.verdict, verify.VERDICT_REPRODUCIBLE)
        self.assertEqual(
            result.extra_hashes["deviceHash"],
            verify.device_firmware_hash(b"\x02\x00\x00\x00", payload),
        )

    def test_trezor_signature_block_is_zeroed_on_reference_only(self):
        built_data = bytearray(b"\x11" * 4096)
        built_data[1983:2048] = bytes(65)
        reference_data = bytearray(b"\x11" * 4096)
        reference_data[1983:2048] = b"\xee" * 65
        built = self._artifact("firmware.bin", bytes(built_data))
        reference = self._artifact("trezor-t3t1-2.8.1.bin", bytes(reference_data))

        result = verify.compare_artifacts(built, reference, verify.PRODUCTS["trezor-safe5"], self.root / "cmp")

        self.assertEqual(result.verdict, verify.VERDICT_REPRODUCIBLE)
        self.assertNotEqual(result.built_hash, result.reference_hash)

    def test_keystone_mismatch_needs_manual_verification(self):
        built = self._artifact("mh1903.bin", b"\x01" * 64)
        packed = self._artifact("keystone3.bin", b"\x02" * 80)
        same = self._artifact("keystone3-same.bin", b"\x01" * 64)
        product = verify.PRODUCTS["keystone3-pro"]

        mismatch = verify.compare_artifacts(built, packed, product, self.root / "packed")
        match = verify.compare_artifacts(built, same, product, self.root / "same")

        self.assertEqual(mismatch.verdict, verify.VERDICT_MANUAL)
        self.assertIn("size 64 != 80", mismatch.differences)
        self.assertEqual(match.verdict, verify.VERDICT_REPRODUCIBLE)


class DiagnosticsTests(unittest.TestCase):
    def test_cluster_offsets_groups_contiguous_runs(self):
        self.assertEqual(verify.cluster_offsets([1, 2, 3, 7, 9, 10]), [(1, 3), (7, 7), (9, 10)])
        self.assertEqual(verify.cluster_offsets([]), [])

    def test_differing_offsets_spans_chunks(self):
        left = bytes(10000)
        right = bytearray(left)
        right[5] = 1
        right[4097] = 1
        self.assertEqual(verify.differing_offsets(left, bytes(right)), [5, 4097])

    def test_ascii_strings_near_offset(self):
        data = b"\x00\x01hello world\x00\x02\x03ab\x00"
        self.assertEqual(verify.ascii_strings_near(data, 5), ["hello world"])

    def test_describe_binary_differences_lists_regions(self):
        left = b"AAAAversion-1.0AAAA"
        right = b"AAAAversion-2.0AAAA"
        lines = verify.describe_binary_differences(left, right)
        self.assertIn("Differing bytes in common range: 1", lines)
        self.assertIn("Region 1: bytes 12 to 12 (1 bytes)", lines)
        self.assertTrue(any(line.startswith("Text near offset 12:") for line in lines))


if __name__ == "__main__":
    unittest.main()
