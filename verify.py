import argparse
import copy
import difflib
import filecmp
import hashlib
import json
import os
import re
import shutil
import struct
import subprocess
import sys
import time
import urllib.error
import urllib.request
import xml.etree.ElementTree as ET
import zipfile
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Sequence, Tuple, Union

import yaml

SCRIPT_VERSION = "v1.0.0"
TOOLS_IMAGE = os.environ.get("WALLET_VERIFY_TOOLS_IMAGE", "docker.io/walletscrutiny/android:5")
DOWNLOAD_RETRIES = int(os.environ.get("WALLET_VERIFY_DOWNLOAD_RETRIES", "3"))
RETRY_DELAY_SECONDS = float(os.environ.get("WALLET_VERIFY_RETRY_DELAY", "5"))
DOWNLOAD_TIMEOUT = int(os.environ.get("WALLET_VERIFY_DOWNLOAD_TIMEOUT", "60"))
WORK_ROOT = os.environ.get("WALLET_VERIFY_WORK_ROOT", "/tmp")
DEFAULT_CONFIG_FILE = "wallet-verify.json"
DEFAULT_RESULTS_FILE = "COMPARISON_RESULTS.yaml"
DEFAULT_IGNORE_PATTERNS = ("META-INF",)
CONTAINER_ENGINES = ("docker", "podman")
OUTPUT_TAIL_LINES = 120
USER_ACTION_HOOK = 'echo "CTRL-D to continue"; bash'

VERDICT_REPRODUCIBLE = "reproducible"
VERDICT_NOT_REPRODUCIBLE = "not_reproducible"
VERDICT_BUILD_FAILED = "build_failed"
VERDICT_MANUAL = "manual_verification_required"

TRZF_MAGIC = b"TRZF"
OKTV_MAGIC = b"OKTV"
FIRMWARE_HEADER_PREFIX = 1024
BITBOX02_MAX_FIRMWARE_SIZE = 884736


# Per-product descriptors. String values are str.format templates over the
# target fields (version, variant, version_name, version_code, hash, date,
# short_version, abi) plus the selected variant's "vars".
PRODUCTS: dict[str, dict] = {
    "bitbox02": {
        "name": "BitBox02",
        "kind": "firmware",
        "repo": "https://github.com/BitBoxSwiss/bitbox02-firmware",
        "tag": "{tag_prefix}/v{version}",
        "submodules": True,
        "architecture": "arm-cortex-m4",
        "default_variant": "btc",
        "variants": {
            "btc": {
                "tag_prefix": "firmware-btc-only",
                "make_target": "firmware-btc",
                "asset": "firmware-bitbox02-btconly.v{version}.signed.bin",
            },
            "multi": {
                "tag_prefix": "firmware",
                "make_target": "firmware",
                "asset": "firmware-bitbox02-multi.v{version}.signed.bin",
            },
        },
        "build": {
            "dockerfile": "Dockerfile",
            "image": "bitbox02-firmware",
            "platform": "linux/amd64",
            "workdir": "/bb02",
            "command": "git config --global --add safe.directory /bb02 && cd /bb02 && make {make_target}",
            "artifact": "build/bin/{make_target}.bin",
            "artifact_glob": "build/bin/*.bin",
        },
        "reference": {
            "url": "https://github.com/BitBoxSwiss/bitbox02-firmware/releases/download/{tag_prefix}%2Fv{version}/{asset}",
            "alt_urls": [
                "https://github.com/BitBoxSwiss/bitbox02-firmware/releases/download/{tag_prefix}%2Fv{version}/firmware-{variant}.v{version}.signed.bin",
            ],
            "filename": "{asset}",
            "hint": "Release assets are named firmware-bitbox02-<btconly|multi>.v<version>.signed.bin",
        },
        "normalize": [{"op": "strip", "offset": 588, "side": "reference"}],
        "device_hash": {
            "header_length": 588,
            "version_offset": 392,
            "version_length": 4,
            "max_size": BITBOX02_MAX_FIRMWARE_SIZE,
        },
    },
    "coldcard": {
        "name": "Coldcard",
        "kind": "firmware",
        "repo": "https://github.com/Coldcard/firmware.git",
        "tag": "{version}",
        "architecture": "arm-cortex-m4",
        "default_variant": "mk4",
        "variants": {
            "mk4": {"mkfile": "MK4-Makefile"},
            "q1": {"mkfile": "Q1-Makefile"},
        },
        "build": {
            "dockerfile": "stm32/dockerfile.build",
            "context": "stm32",
            "image": "coldcard-build",
            "workdir": "/work/src",
            "source_readonly": True,
            "privileged": True,
            "volumes": [["stm32/built", "/work/built"]],
            "command": "cd /work && sh src/stm32/repro-build.sh {short_version} {variant} {mkfile}",
            "artifact": "stm32/built/firmware-signed.bin",
            "artifact_glob": "stm32/built/*.bin",
        },
        "reference": {
            "url": "https://coldcard.com/downloads/{version}-{variant}-coldcard.dfu",
            "filename": "{version}-{variant}-coldcard.dfu",
            "stage_into": "releases/{version}-{variant}-coldcard.dfu",
            "built_path": "stm32/built/check-fw.bin",
            "hint": "Coldcard downloads are named <date>T<time>-v<version>-<model>-coldcard.dfu",
        },
        "normalize": [{"op": "zero", "offset": 0x3F80, "length": 128}],
    },
    "onekey-pro": {
        "name": "OneKey Pro",
        "kind": "firmware",
        "repo": "https://github.com/OneKeyHQ/firmware-pro",
        "tag": "v{version}",
        "submodules": True,
        "architecture": "arm-cortex-m7",
        "build": {
            "image": "docker.io/nixos/nix:2.23.3",
            "workdir": "/home/builder/firmware-pro",
            "env": {"PRODUCTION": "1"},
            "command": (
                "git config --global --add safe.directory '*' && "
                "nix-shell --run 'poetry install && poetry run make -C core build_firmware'"
            ),
            "artifact_glob": "core/build/firmware/pro.*.bin",
        },
        "reference": {
            "url": "https://github.com/OneKeyHQ/firmware-pro/releases/download/v{version}/pro.{version}-Stable-{date}-{hash}.signed.bin",
            "filename": "official.signed.bin",
            "hint": "Pass --hash and --date as shown in the release asset name (e.g. --date 0704 --hash f23570e)",
        },
        "normalize": [
            {"op": "header_total", "side": "reference"},
            {"op": "strip", "offset": 2560},
        ],
    },
    "onekey": {
        "name": "OneKey",
        "kind": "firmware",
        "repo": "https://github.com/OneKeyHQ/firmware.git",
        "tag": "{variant}/v{version}",
        "submodules": True,
        "architecture": "arm-cortex-m4",
        "default_variant": "classic",
        "variants": {
            "classic": {"make": "poetry run ./legacy/script/cibuild"},
            "mini": {"make": "export ONEKEY_MINI=1 && poetry run ./legacy/script/cibuild"},
            "touch": {"make": "poetry run make -C core build_firmware"},
        },
        "build": {
            "image": "docker.io/nixos/nix:2.23.3",
            "workdir": "/build/firmware",
            "env": {"PRODUCTION": "1"},
            "command": (
                "git config --global --add safe.directory '*' && "
                "nix-shell --run 'poetry install && {make}'"
            ),
            "artifact_glob": "**/{variant}*Stable*.bin",
        },
        "reference": {
            "url": "https://github.com/OneKeyHQ/firmware/releases/download/{variant}%2Fv{version}/{variant}.{version}-Stable-{date}-{hash}.signed.bin",
            "filename": "official-firmware.bin",
            "hint": "OneKey assets are named <type>.<version>-Stable-<MMDD>-<short hash>.signed.bin",
        },
        "normalize": [],
    },
    "trezor-safe5": {
        "name": "Trezor Safe 5",
        "kind": "firmware",
        "repo": "https://github.com/trezor/trezor-firmware.git",
        "tag": "core/v{version}",
        "submodules": True,
        "architecture": "arm-cortex-m33",
        "default_variant": "standard",
        "variants": {
            "standard": {"suffix": "", "bitcoin_only": "0"},
            "bitcoinonly": {"suffix": "-bitcoinonly", "bitcoin_only": "1"},
        },
        "build": {
            "dockerfile": "ci/Dockerfile",
            "context": ".",
            "image": "trezor-firmware-env",
            "workdir": "/build/trezor-firmware",
            "env": {"TREZOR_MODEL": "T3T1", "PRODUCTION": "1"},
            "command": (
                "git config --global --add safe.directory '*' && "
                "nix-shell --run 'poetry install && BITCOIN_ONLY={bitcoin_only} poetry run make -C core build_firmware'"
            ),
            "artifact": "core/build/firmware/firmware.bin",
            "artifact_glob": "core/build/firmware/*.bin",
        },
        "reference": {
            "url": "https://data.trezor.io/firmware/t3t1/trezor-t3t1-{version}{suffix}.bin",
            "filename": "trezor-t3t1-{version}{suffix}.bin",
        },
        "normalize": [{"op": "zero", "offset": 1983, "length": 65, "side": "reference"}],
    },
    "passport": {
        "name": "Passport",
        "kind": "firmware",
        "repo": "https://github.com/Foundation-Devices/passport2.git",
        "tag": "v{version}",
        "architecture": "arm-cortex-m7",
        "default_variant": "color",
        "variants": {
            "color": {
                "asset": "v{version}-passport.bin",
                "screen_mode": "COLOR",
                "cflags": "-DSCREEN_MODE_COLOR -DHAS_FUEL_GAUGE",
            },
            "mono": {
                "asset": "v{version}-founders-passport.bin",
                "screen_mode": "MONO",
                "cflags": "-DSCREEN_MODE_MONO",
            },
        },
        "build": {
            "dockerfile": "Dockerfile",
            "image": "foundation-devices/passport2:latest",
            "workdir": "/workspace",
            "env": {"MPY_CROSS": "/workspace/mpy-cross/mpy-cross-docker"},
            "command": (
                "make -C mpy-cross PROG=mpy-cross-docker BUILD=build-docker && "
                "make -C ports/stm32/ "
                "LV_CFLAGS='-DLV_COLOR_DEPTH=16 -DLV_COLOR_16_SWAP -DLV_TICK_CUSTOM=1 {cflags}' "
                "BOARD=Passport SCREEN_MODE={screen_mode} FROZEN_MANIFEST='boards/Passport/manifest.py'"
            ),
            "artifact": "ports/stm32/build-Passport/firmware-{screen_mode}.bin",
            "artifact_glob": "ports/stm32/build-Passport/*.bin",
        },
        "reference": {
            "url": "https://github.com/Foundation-Devices/passport2/releases/download/v{version}/{asset}",
            "filename": "{asset}",
        },
        "normalize": [{"op": "strip", "offset": 2048, "side": "reference"}],
    },
    "keystone3-pro": {
        "name": "Keystone 3 Pro",
        "kind": "firmware",
        "repo": "https://github.com/KeystoneHQ/keystone3-firmware",
        "tag": "{version}",
        "submodules": True,
        "architecture": "arm-cortex-m4",
        "default_variant": "multicoin",
        "variants": {
            "multicoin": {"channel": "web3"},
            "cypherpunk": {"channel": "cypherpunk"},
            "btc": {"channel": "btc_only"},
        },
        "build": {
            "dockerfile": "Dockerfile",
            "image": "keystonehq/keystone3_baker:latest",
            "workdir": "/keystone3-firmware",
            "command": "python3 build.py -e production",
            "artifact": "build/mh1903.bin",
            "artifact_glob": "build/*.bin",
        },
        "reference": {
            "url": "https://keyst.one/contents/KeystoneFirmwareG3/v{version}/{channel}/keystone3.bin",
            "filename": "keystone3.bin",
            "hint": "The official keystone3.bin is signed and packed, compare the unsigned content by hand",
        },
        "normalize": [],
        # the downloadable image is packed, so a byte mismatch is expected
        "mismatch_verdict": VERDICT_MANUAL,
    },
    "prokey-optimum": {
        "name": "Prokey Optimum",
        "kind": "firmware",
        "repo": "https://github.com/prokey-io/prokey-optimum-firmware.git",
        "tag": "v{version}",
        "submodules": True,
        "architecture": "arm-cortex-m3",
        "build": {
            "image": "docker.io/library/ubuntu:20.04",
            "workdir": "/prokey",
            "env": {"DEBIAN_FRONTEND": "noninteractive", "LC_ALL": "C.UTF-8", "LANG": "C.UTF-8"},
            "command": (
                "apt-get update && apt-get install -y git make gcc-arm-none-eabi libnewlib-arm-none-eabi "
                "protobuf-compiler python3-pip && pip3 install pipenv && "
                "git config --global --add safe.directory '*' && "
                "pipenv install && pipenv run script/cibuild"
            ),
            "artifact": "firmware/prokey.bin",
            "artifact_glob": "**/prokey*.bin",
        },
        "reference": {
            "url": "https://github.com/prokey-io/prokey-optimum-firmware/releases/download/v{version}/prokey-optimum-v{version}.bin",
            "alt_urls": [
                "https://github.com/prokey-io/prokey-optimum-firmware/releases/download/v{version}/prokey-optimum-{version}.bin",
                "https://github.com/prokey-io/prokey-optimum-firmware/releases/download/v{version}/firmware-v{version}.bin",
            ],
            "filename": "prokey-optimum-v{version}.bin",
            "hint": "If no release asset exists, download the official firmware by hand and pass --reference",
        },
        "normalize": [],
    },
    "phoenix": {
        "name": "Phoenix",
        "kind": "apk",
        "app_id": "fr.acinq.phoenix.mainnet",
        "firmware_type": "mainnet",
        "repo": "https://github.com/ACINQ/phoenix",
        "tag": "android-v{version_name}",
        "engine_order": ["podman", "docker"],
        "build": {
            "dockerfile": "Dockerfile",
            "image": "phoenix_build",
            "workdir": "/home/ubuntu/phoenix",
            "command": "./gradlew :phoenix-android:assemble",
            "artifact": "phoenix-android/build/outputs/apk/release/phoenix-{version_code}-{version_name}-mainnet-release.apk",
            "artifact_glob": "phoenix-android/build/outputs/apk/**/*.apk",
        },
        "reference": {"device": True},
        "normalize": [{"op": "unzip"}],
        "ignore": ["META-INF"],
    },
    "zeus": {
        "name": "Zeus",
        "kind": "apk",
        "app_id": "app.zeusln.zeus",
        "repo": "https://github.com/ZeusLN/zeus",
        "tag": "v{version_name}",
        "abi_by_version_code": {"1": "armeabi-v7a", "2": "x86", "3": "arm64-v8a", "4": "x86_64"},
        "build": {
            "image": "docker.io/reactnativecommunity/react-native-android@sha256:6607421944d844b82e4d05df50c11dc9fa455108222d63475cd3a0f62465fbda",
            "workdir": "/olympus/zeus",
            "command": (
                "yarn install --frozen-lockfile && yarn cache clean --force && cd android && "
                "./gradlew clean && ./gradlew app:assembleRelease --no-daemon --stacktrace"
            ),
            "artifact": "android/app/build/outputs/apk/release/app-{abi}-release-unsigned.apk",
            "artifact_glob": "android/app/build/outputs/apk/release/*{abi}*.apk",
        },
        "reference": {"device": True},
        "normalize": [{"op": "unzip"}],
        "ignore": ["META-INF"],
        "review": [r"assets/dexopt/baseline\.prof"],
    },
    "bluewallet": {
        "name": "BlueWallet",
        "kind": "apk",
        "app_id": "io.bluewallet.bluewallet",
        "firmware_type": "release",
        "repo": "https://github.com/BlueWallet/BlueWallet",
        "tag": "v{version_name}",
        "build": {
            "image": "docker.io/reactnativecommunity/react-native-android@sha256:6607421944d844b82e4d05df50c11dc9fa455108222d63475cd3a0f62465fbda",
            "workdir": "/Users/runner/work/1/s",
            "env": {"NODE_ENV": "production"},
            "command": (
                "npm config set fetch-retry-maxtimeout 600000 && npm config set fetch-retry-mintimeout 100000 && "
                "npm install --production --no-optional --omit=optional --no-audit --no-fund --ignore-scripts && "
                "npm run postinstall && rm -rf node_modules/realm && npm install realm && "
                "echo '\"master\"' > current-branch.json && "
                "echo \"sdk.dir=$ANDROID_HOME\" > android/local.properties && "
                "cd android && chmod +x ./gradlew && ./gradlew assembleRelease "
                "-Dorg.gradle.internal.http.socketTimeout=600000 -Dorg.gradle.internal.http.connectionTimeout=600000"
            ),
            "artifact": "android/app/build/outputs/apk/release/app-release-unsigned.apk",
            "artifact_glob": "android/app/build/outputs/apk/release/*.apk",
        },
        "reference": {},
        "normalize": [{"op": "unzip"}],
        "ignore": ["META-INF"],
    },
    "mycelium": {
        "name": "Mycelium Wallet",
        "kind": "apk",
        "app_id": "com.mycelium.wallet",
        "firmware_type": "prodnet",
        "repo": "https://github.com/mycelium-com/wallet-android",
        "tag": "v{version_name}",
        "submodules": True,
        "build": {
            "dockerfile": "Dockerfile",
            "image": "mycelium_builder",
            "workdir": "/app",
            # disorderfs needs fuse inside the container
            "privileged": True,
            "command": (
                "apt update && apt install -y disorderfs && mkdir -p /project/ && "
                "disorderfs --sort-dirents=yes --reverse-dirents=no /app/ /project/ && "
                "cd /project/ && ./gradlew -x lint -x test clean :mbw:assembleProdnetRelease"
            ),
            "artifact": "mbw/build/outputs/apk/prodnet/release/mbw-prodnet-release.apk",
            "artifact_glob": "mbw/build/outputs/apk/prodnet/release/*.apk",
        },
        "reference": {},
        "normalize": [{"op": "unzip"}],
        "ignore": ["META-INF"],
    },
    "bankwallet": {
        "name": "Unstoppable Wallet",
        "kind": "apk",
        "app_id": "io.horizontalsystems.bankwallet",
        "firmware_type": "base",
        "repo": "https://github.com/horizontalsystems/unstoppable-wallet-android.git",
        "tag": "{version_name}",
        "build": {
            "image": "docker.io/walletscrutiny/android:5",
            "workdir": "/mnt",
            "command": (
                "apt update && DEBIAN_FRONTEND=noninteractive apt install openjdk-17-jdk --yes && "
                "./gradlew clean :app:assembleBaseRelease"
            ),
            "artifact": "app/build/outputs/apk/base/release/app-base-release.apk",
            "artifact_glob": "app/build/outputs/apk/base/release/*.apk",
        },
        "reference": {},
        "normalize": [{"op": "unzip"}],
        "ignore": ["META-INF"],
    },
    "green": {
        "name": "Blockstream Green",
        "kind": "apk",
        "app_id": "com.greenaddress.greenbits_android_wallet",
        "firmware_type": "productionGoogle",
        "repo": "https://github.com/Blockstream/green_android/",
        "tag": "release_{version_name}",
        "build": {
            "image": "docker.io/walletscrutiny/android:5",
            "workdir": "/mnt",
            "command": (
                "chmod 777 /tmp/ && apt update && "
                "DEBIAN_FRONTEND=noninteractive apt install -y curl jq openjdk-17-jdk && "
                "(yes | /opt/android-sdk/tools/bin/sdkmanager 'build-tools;34.0.0') && "
                "./gradlew useBlockstreamKeys && ./gradlew -x test clean assembleProductionGoogleRelease"
            ),
            "artifact": (
                "androidApp/build/outputs/apk/productionGoogle/release/"
                "BlockstreamGreen-v{version_name}-productionGoogle-release-unsigned.apk"
            ),
            "artifact_glob": "androidApp/build/outputs/apk/productionGoogle/release/*.apk",
        },
        "reference": {},
        "normalize": [{"op": "unzip"}],
        "ignore": ["META-INF"],
    },
}


class VerificationError(RuntimeError):
    pass


class EnvironmentCheckError(VerificationError):
    pass


class CommandError(VerificationError):
    def __init__(self, message: str, command: Sequence[str] = (), returncode: Optional[int] = None):
        super().__init__(message)
        self.command = list(command)
        self.returncode = returncode


class MetadataExtractionError(VerificationError):
    pass


class CloneError(VerificationError):
    pass


class BuildError(VerificationError):
    pass


class BuildArtifactNotFoundError(VerificationError):
    pass


class DownloadError(VerificationError):
    pass


class DeviceError(VerificationError):
    pass


class NormalizationError(VerificationError):
    pass


class HeaderParseError(NormalizationError):
    pass


@dataclass(frozen=True)
class VerificationTarget:
    product: str
    name: str
    kind: str
    version: str
    repo: str
    tag: str
    variant: Optional[str] = None
    revision_override: Optional[str] = None
    app_id: Optional[str] = None
    version_code: Optional[str] = None
    fields: dict = field(default_factory=dict)


@dataclass(frozen=True)
class RunConfig:
    target: VerificationTarget
    product: dict
    engine: str
    work_dir: Path
    results_file: Optional[Path] = None
    reference_path: Optional[Path] = None
    interactive: bool = False
    cleanup: bool = False


@dataclass(frozen=True)
class ApkMetadata:
    app_id: str
    version_name: str
    version_code: str
    signer: str = ""


@dataclass(frozen=True)
class BuildArtifact:
    path: Path
    size: int
    sha256: str


@dataclass(frozen=True)
class NormalizedArtifact:
    source: BuildArtifact
    mode: str
    path: Path
    sha256: Optional[str] = None
    steps: tuple = ()


@dataclass(frozen=True)
class FirmwareHeader:
    kind: str
    header_length: int
    payload_length: int
    total_size: int


@dataclass(frozen=True)
class ComparisonResult:
    verdict: str
    differences: tuple = ()
    built_hash: str = ""
    reference_hash: str = ""
    built_normalized_hash: str = ""
    reference_normalized_hash: str = ""
    extra_hashes: dict = field(default_factory=dict)
    diagnostics: tuple = ()
    ignored_count: int = 0


@dataclass(frozen=True)
class PipelineOutcome:
    result: ComparisonResult
    commit: str
    built: BuildArtifact
    reference: BuildArtifact
    signature_summary: tuple = ()
    comparison_paths: tuple = ()


def output_tail(text: Optional[str], lines: int = OUTPUT_TAIL_LINES) -> str:
    if not text:
        return ""
    return "\n".join(text.splitlines()[-lines:])


def run_checked_command(
    command: list[str],
    action: str,
    cwd: Optional[Union[str, Path]] = None,
    env: Optional[dict[str, str]] = None,
) -> subprocess.CompletedProcess:
    try:
        result = subprocess.run(command, cwd=cwd, env=env, capture_output=True, text=True)
    except FileNotFoundError as error:
        raise CommandError(f"{action} failed. command={command}: {error}", command) from error
    if result.returncode == 0:
        return result

    raise CommandError(
        f"{action} failed. command={command} exit={result.returncode}\n"
        f"--- stdout (tail) ---\n{output_tail(result.stdout)}\n"
        f"--- stderr (tail) ---\n{output_tail(result.stderr)}",
        command,
        result.returncode,
    )


def run_attached_command(command: list[str], action: str, cwd: Optional[Union[str, Path]] = None) -> None:
    """Run a command with the terminal attached (no capture), for long interactive builds."""
    try:
        result = subprocess.run(command, cwd=cwd)
    except FileNotFoundError as error:
        raise CommandError(f"{action} failed. command={command}: {error}", command) from error
    if result.returncode != 0:
        raise CommandError(f"{action} failed. command={command} exit={result.returncode}", command, result.returncode)


def ensure_tool_exists(tool: str) -> str:
    path = shutil.which(tool)
    if path is None:
        raise EnvironmentCheckError(f"Required tool not found: {tool}")
    return path


def detect_container_engine(preferred: Optional[str] = None, order: Sequence[str] = CONTAINER_ENGINES) -> str:
    forced = preferred or os.environ.get("WALLET_VERIFY_CONTAINER_ENGINE")
    if forced:
        if forced not in CONTAINER_ENGINES:
            raise EnvironmentCheckError(f"Unsupported container engine: {forced}")
        if shutil.which(forced) is None:
            raise EnvironmentCheckError(f"Requested container engine not found: {forced}")
        print(f"[env] container-engine {forced} (forced)")
        return forced

    for engine in order:
        if shutil.which(engine):
            print(f"[env] container-engine {engine}")
            return engine

    raise EnvironmentCheckError("Neither docker nor podman found. Please install Docker or Podman.")


def format_bytes(size: int) -> str:
    units = ["B", "KB", "MB", "GB"]
    value = float(size)
    for unit in units:
        if value < 1024 or unit == units[-1]:
            if unit == "B":
                return f"{int(value)}{unit}"
            return f"{value:.1f}{unit}"
        value /= 1024
    return f"{int(size)}B"


def compute_sha256(file_path: Union[str, Path]) -> str:
    digest = hashlib.sha256()
    with open(file_path, "rb") as file:
        while True:
            chunk = file.read(1024 * 1024)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def describe_artifact(path: Union[str, Path]) -> BuildArtifact:
    artifact_path = Path(path)
    return BuildArtifact(path=artifact_path, size=artifact_path.stat().st_size, sha256=compute_sha256(artifact_path))


def retry_call(
    func: Callable,
    attempts: int = DOWNLOAD_RETRIES,
    delay: float = RETRY_DELAY_SECONDS,
    retry_on: Tuple[type, ...] = (Exception,),
    label: str = "operation",
    sleep: Optional[Callable[[float], None]] = None,
):
    """Call ``func`` up to ``attempts`` times, sleeping ``delay`` seconds between failures.

    The last error is re-raised unchanged once every attempt has failed. There is
    no sleep after the final attempt.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    sleep = sleep or time.sleep

    for attempt in range(1, attempts + 1):
        try:
            return func()
        except retry_on as error:
            if attempt >= attempts:
                raise
            print(f"[retry] {label} attempt={attempt}/{attempts} reason={error} sleep={delay}s")
            sleep(delay)


def resolve_download_urls(primary_urls: Sequence[str], env_var: str) -> list[str]:
    raw = os.environ.get(env_var, "").strip()
    urls: list[str] = []
    if raw:
        for item in raw.split(","):
            candidate = item.strip()
            if candidate:
                urls.append(candidate)

    for url in primary_urls:
        if url and url not in urls:
            urls.append(url)

    return urls


def _remove_partial(path: str) -> None:
    try:
        if os.path.exists(path):
            os.remove(path)
    except OSError as error:
        print(f"Warning: failed to remove partial download {path}: {error}")


def download_once(url: str, target_path: str) -> None:
    target_name = os.path.basename(target_path)
    temp_path = f"{target_path}.part"
    try:
        with urllib.request.urlopen(url, timeout=DOWNLOAD_TIMEOUT) as response, open(temp_path, "wb") as output:
            content_length_header = response.headers.get("Content-Length")
            total_bytes = int(content_length_header) if content_length_header else 0
            downloaded_bytes = 0
            last_percent = -1

            while True:
                chunk = response.read(1024 * 256)
                if not chunk:
                    break
                output.write(chunk)
                downloaded_bytes += len(chunk)

                if total_bytes > 0:
                    percent = min(int(downloaded_bytes * 100 / total_bytes), 100)
                    if percent != last_percent and percent % 20 == 0:
                        print(
                            f"[download] progress {target_name} {percent}% "
                            f"({format_bytes(downloaded_bytes)}/{format_bytes(total_bytes)})"
                        )
                        last_percent = percent

            if total_bytes > 0 and downloaded_bytes < total_bytes:
                raise urllib.error.ContentTooShortError(
                    f"retrieval incomplete: got only {downloaded_bytes} out of {total_bytes} bytes",
                    None,
                )
            if downloaded_bytes == 0:
                raise DownloadError(f"empty response from {url}")

        os.replace(temp_path, target_path)
    except urllib.error.HTTPError as error:
        _remove_partial(temp_path)
        if error.code == 404:
            raise DownloadError(f"HTTP 404 (not found) for {url}") from error
        raise DownloadError(f"HTTP {error.code} for {url}") from error
    except BaseException:
        _remove_partial(temp_path)
        raise


def download_file_with_retries(
    url: str,
    target_path: Union[str, Path],
    retries: int = DOWNLOAD_RETRIES,
    delay: float = RETRY_DELAY_SECONDS,
    sleep: Optional[Callable[[float], None]] = None,
) -> str:
    target_path = str(target_path)
    target_name = os.path.basename(target_path)
    os.makedirs(os.path.dirname(target_path) or ".", exist_ok=True)
    print(f"[download] start {target_name} url={url}")

    try:
        retry_call(
            lambda: download_once(url, target_path),
            attempts=retries,
            delay=delay,
            retry_on=(OSError, DownloadError, ValueError),
            label=f"download {target_name}",
            sleep=sleep,
        )
    except (OSError, DownloadError, ValueError) as error:
        raise DownloadError(f"Failed to download {target_name} after {retries} attempts: {error}") from error

    print(f"[download] done {target_name} size={format_bytes(os.path.getsize(target_path))}")
    return target_path


def download_with_url_fallback(
    urls: Sequence[str],
    target_path: Union[str, Path],
    hint: Optional[str] = None,
    retries: int = DOWNLOAD_RETRIES,
    delay: float = RETRY_DELAY_SECONDS,
    sleep: Optional[Callable[[float], None]] = None,
) -> str:
    errors: list[str] = []
    for url in urls:
        try:
            return download_file_with_retries(url, target_path, retries=retries, delay=delay, sleep=sleep)
        except DownloadError as error:
            errors.append(f"{url} -> {error}")
            print(f"[download] source-failed {url} reason={error}")

    if hint:
        print(f"[download] hint: {hint}")
    raise DownloadError(
        f"All download sources failed for {os.path.basename(str(target_path))}: {' | '.join(errors)}"
    )


def validate_local_artifact(path: Union[str, Path]) -> Path:
    artifact = Path(path).expanduser().resolve()
    if not artifact.is_file():
        raise EnvironmentCheckError(f"Artifact file not found: {artifact}")
    if artifact.stat().st_size == 0:
        raise EnvironmentCheckError(f"Artifact file is empty: {artifact}")
    return artifact


def load_config(config_path: Optional[str]) -> dict:
    if config_path and os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as f:
            return json.load(f)
    return {}


def merge_products(base: dict, overrides: Optional[dict]) -> dict:
    merged = copy.deepcopy(base)
    for key, record in (overrides or {}).items():
        if key in merged:
            merged[key].update(record)
        else:
            merged[key] = dict(record)
    return merged


def resolve_product(key: Optional[str], products: dict) -> dict:
    if not key:
        raise EnvironmentCheckError(f"Product not specified. Known products: {', '.join(sorted(products))}")
    if key not in products:
        raise EnvironmentCheckError(f"Unknown product '{key}'. Known products: {', '.join(sorted(products))}")
    return products[key]


def resolve_variant(product: dict, requested: Optional[str]) -> Optional[str]:
    variants = product.get("variants") or {}
    if not variants:
        return requested
    variant = requested or product.get("default_variant")
    if variant not in variants:
        raise EnvironmentCheckError(
            f"Invalid type '{variant}' for {product.get('name')}. Must be one of: {', '.join(variants)}"
        )
    return variant


def derive_short_version(version: str) -> str:
    match = re.search(r"v([^-]+)", version or "")
    return match.group(1) if match else version


def abi_for_version_code(product: dict, version_code: Optional[str]) -> Optional[str]:
    mapping = product.get("abi_by_version_code")
    if not mapping:
        return None
    suffix = (version_code or "")[-1:]
    if suffix not in mapping:
        raise MetadataExtractionError(
            f"Invalid version code {version_code!r}: expected it to end in one of {', '.join(sorted(mapping))}"
        )
    return mapping[suffix]


def render_template(template: str, fields: dict) -> str:
    try:
        return template.format(**fields)
    except KeyError as error:
        raise EnvironmentCheckError(
            f"Template {template!r} needs {error.args[0]!r}; provide it on the command line (e.g. --hash/--date)"
        ) from error


def template_fields(product: dict, version: str, variant: Optional[str], **extra: Optional[str]) -> dict:
    fields: dict = {
        "version": version,
        "variant": variant or "",
        "short_version": derive_short_version(version),
    }
    for key, value in extra.items():
        if value is not None:
            fields[key] = value

    variant_vars = (product.get("variants") or {}).get(variant or "", {})
    for key, value in variant_vars.items():
        fields[key] = render_template(value, fields) if isinstance(value, str) else value
    return fields


def resolve_tag(product: dict, fields: dict, revision_override: Optional[str] = None) -> str:
    if revision_override:
        return revision_override
    return render_template(product["tag"], fields)


def parse_apktool_yml(text: str) -> Tuple[str, str]:
    # apktool prefixes the document with a Java type tag that safe loaders reject
    lines = [line for line in text.splitlines() if not line.lstrip().startswith("!!")]
    try:
        document = yaml.load("\n".join(lines), Loader=yaml.BaseLoader) or {}
    except yaml.YAMLError as error:
        raise MetadataExtractionError(f"apktool.yml could not be parsed: {error}") from error
    version_info = document.get("versionInfo") or {}
    version_name = str(version_info.get("versionName") or "").strip()
    version_code = str(version_info.get("versionCode") or "").strip()
    return version_name, version_code


def parse_manifest_package(manifest_text: str) -> str:
    try:
        root = ET.fromstring(manifest_text)
    except ET.ParseError as error:
        raise MetadataExtractionError(f"AndroidManifest.xml could not be parsed: {error}") from error
    return (root.attrib.get("package") or "").strip()


def parse_signer(apksigner_output: str) -> str:
    for line in apksigner_output.splitlines():
        if "Signer #1 certificate SHA-256 digest:" in line:
            return line.split(":", 1)[1].strip()
    return ""


def container_apktool(engine: str, apk_path: Path, target_dir: Path) -> Path:
    apk_path = Path(apk_path).resolve()
    target_dir = Path(target_dir).resolve()
    if target_dir.exists():
        shutil.rmtree(target_dir)
    target_dir.parent.mkdir(parents=True, exist_ok=True)

    command = [
        engine,
        "run",
        "--rm",
        "--volume",
        f"{target_dir.parent}:/tfp",
        "--volume",
        f"{apk_path.parent}:/af:ro",
        TOOLS_IMAGE,
        "sh",
        "-c",
        f'apktool d -o "/tfp/{target_dir.name}" "/af/{apk_path.name}"',
    ]
    print(f"[input] apktool-decode {apk_path.name} engine={engine}")
    try:
        run_checked_command(command, "Container apktool")
    except CommandError as error:
        if engine == "podman":
            advice = "Try running: podman system reset --force"
        else:
            advice = "Try running: docker system prune -f"
        raise MetadataExtractionError(f"{error}\nThis might be due to storage issues. {advice}") from error
    return target_dir


def container_signer(engine: str, apk_path: Path) -> str:
    apk_path = Path(apk_path).resolve()
    command = [
        engine,
        "run",
        "--rm",
        "--volume",
        f"{apk_path.parent}:/mnt:ro",
        "--workdir",
        "/mnt",
        TOOLS_IMAGE,
        "apksigner",
        "verify",
        "--print-certs",
        apk_path.name,
    ]
    try:
        result = run_checked_command(command, "Container apksigner")
    except CommandError as error:
        print(f"Warning: could not determine signer: {error}")
        return ""
    return parse_signer(result.stdout)


def extract_apk_metadata(engine: str, apk_path: Path, work_dir: Path) -> ApkMetadata:
    decoded_dir = container_apktool(engine, apk_path, Path(work_dir) / "reference-decoded")

    manifest_path = decoded_dir / "AndroidManifest.xml"
    apktool_yml_path = decoded_dir / "apktool.yml"
    if not manifest_path.exists() or not apktool_yml_path.exists():
        raise MetadataExtractionError(f"apktool output is incomplete in {decoded_dir}")

    app_id = parse_manifest_package(manifest_path.read_text(encoding="utf-8", errors="replace"))
    version_name, version_code = parse_apktool_yml(apktool_yml_path.read_text(encoding="utf-8", errors="replace"))

    for label, value in (("appId", app_id), ("versionName", version_name), ("versionCode", version_code)):
        if not value:
            raise MetadataExtractionError(f"{label} could not be determined")

    signer = container_signer(engine, apk_path)
    metadata = ApkMetadata(app_id=app_id, version_name=version_name, version_code=version_code, signer=signer)
    print(f"[input] apk appId={app_id} versionName={version_name} versionCode={version_code}")
    return metadata


def check_expected_app_id(metadata: ApkMetadata, product: dict) -> None:
    expected = product.get("app_id")
    if expected and metadata.app_id != expected:
        raise MetadataExtractionError(
            f"This product is only for {product.get('name')} ({expected}). Detected appId: {metadata.app_id}"
        )


def build_target(
    product_key: str,
    product: dict,
    version: Optional[str] = None,
    variant: Optional[str] = None,
    revision_override: Optional[str] = None,
    metadata: Optional[ApkMetadata] = None,
    short_hash: Optional[str] = None,
    release_date: Optional[str] = None,
) -> VerificationTarget:
    kind = product.get("kind", "firmware")
    variant = resolve_variant(product, variant)
    app_id = None
    version_code = None

    if kind == "apk":
        if metadata is None:
            raise EnvironmentCheckError("APK metadata is required for app verification")
        version = metadata.version_name
        version_code = metadata.version_code
        app_id = metadata.app_id
    elif not version:
        raise EnvironmentCheckError("Version is required! (use -v/--version)")

    fields = template_fields(
        product,
        version,
        variant,
        version_name=version if kind == "apk" else None,
        version_code=version_code,
        app_id=app_id,
        hash=short_hash,
        date=release_date,
        abi=abi_for_version_code(product, version_code),
        firmware_type=product.get("firmware_type"),
    )
    tag = resolve_tag(product, fields, revision_override)

    return VerificationTarget(
        product=product_key,
        name=product.get("name", product_key),
        kind=kind,
        version=version,
        repo=product["repo"],
        tag=tag,
        variant=variant,
        revision_override=revision_override,
        app_id=app_id,
        version_code=version_code,
        fields=fields,
    )


def git_clone_command(repo: str, dest: Path, tag: Optional[str], submodules: bool) -> list[str]:
    command = ["git", "clone", "--quiet"]
    if tag:
        command.extend(["--depth", "1", "--branch", tag])
    if submodules:
        command.append("--recurse-submodules")
    command.extend([repo, str(dest)])
    return command


def list_remote_tags(repo: str) -> list[str]:
    try:
        result = run_checked_command(["git", "ls-remote", "--tags", repo], "List remote tags")
    except CommandError as error:
        print(f"Warning: could not list remote tags: {error}")
        return []

    tags: list[str] = []
    for line in result.stdout.splitlines():
        parts = line.split("\t", 1)
        if len(parts) != 2 or not parts[1].startswith("refs/tags/"):
            continue
        name = parts[1][len("refs/tags/"):]
        if name.endswith("^{}"):
            name = name[:-3]
        if name not in tags:
            tags.append(name)
    return tags


def suggest_tags(tag: str, tags: Sequence[str], version: Optional[str] = None, limit: int = 10) -> list[str]:
    suggestions: list[str] = []
    if version:
        suggestions.extend(candidate for candidate in tags if version in candidate)
    for candidate in difflib.get_close_matches(tag, list(tags), n=limit, cutoff=0.6):
        if candidate not in suggestions:
            suggestions.append(candidate)
    return suggestions[:limit]


def head_commit(source_dir: Path) -> str:
    result = run_checked_command(["git", "rev-parse", "HEAD"], "Resolve commit", cwd=source_dir)
    return result.stdout.strip()


def clone_source(
    target: VerificationTarget,
    product: dict,
    dest: Path,
    attempts: int = DOWNLOAD_RETRIES,
    delay: float = RETRY_DELAY_SECONDS,
    sleep: Optional[Callable[[float], None]] = None,
) -> str:
    dest = Path(dest)
    submodules = bool(product.get("submodules"))
    clone_ref = None if target.revision_override else target.tag

    def attempt_clone() -> None:
        if dest.exists():
            shutil.rmtree(dest)
        run_checked_command(git_clone_command(target.repo, dest, clone_ref, submodules), "Clone repository")

    print(f"[fetch] clone-start repo={target.repo} ref={target.tag}")
    try:
        retry_call(attempt_clone, attempts=attempts, delay=delay, retry_on=(CommandError,), label="clone", sleep=sleep)
    except CommandError as error:
        suggestions = suggest_tags(target.tag, list_remote_tags(target.repo), target.version)
        if suggestions:
            print(f"[fetch] available tags close to '{target.tag}': {', '.join(suggestions)}")
        raise CloneError(f"Failed to clone {target.repo} at '{target.tag}' after {attempts} attempts: {error}") from error

    if target.revision_override:
        print(f"[fetch] checkout revision-override={target.revision_override}")
        try:
            run_checked_command(["git", "checkout", "--quiet", target.revision_override], "Checkout revision", cwd=dest)
            if submodules:
                run_checked_command(
                    ["git", "submodule", "update", "--init", "--recursive"], "Update submodules", cwd=dest
                )
        except CommandError as error:
            raise CloneError(f"Revision '{target.revision_override}' not found in {target.repo}: {error}") from error

    commit = head_commit(dest)
    print(f"[fetch] clone-done commit={commit}")
    return commit


def _git_output(command: list[str], cwd: Path) -> Tuple[int, str]:
    result = subprocess.run(command, cwd=cwd, capture_output=True, text=True)
    return result.returncode, f"{result.stdout}{result.stderr}"


def _signing_key(verification_output: str) -> str:
    keys = re.findall(r"using \S+ key ([A-F0-9]+)", verification_output)
    return keys[-1] if keys else ""


def tag_signature_summary(source_dir: Path, tag: str) -> list[str]:
    """Describe whether the tag and its commit carry good signatures. Informational only."""
    try:
        _, object_type = _git_output(
            ["git", "for-each-ref", f"refs/tags/{tag}", "--format=%(objecttype)"], source_dir
        )
        annotated = object_type.strip() == "tag"
        lines = [f"Tag type: {'annotated' if annotated else 'lightweight'}"]
        warnings: list[str] = []
        tag_key = ""

        if annotated:
            _, tag_output = _git_output(["git", "tag", "-v", tag], source_dir)
            if "Good signature" in tag_output:
                tag_key = _signing_key(tag_output)
                lines.append("Good signature on annotated tag")
                if tag_key:
                    lines.append(f"Tag signed with: {tag_key}")
            else:
                lines.append("No valid signature found on annotated tag")
                warnings.append("Annotated tag exists but is not signed")
        else:
            lines.append("Tag is lightweight (cannot contain signature)")

        commit_ref = f"{tag}^{{commit}}" if annotated else "HEAD"
        _, commit_output = _git_output(["git", "verify-commit", commit_ref], source_dir)
        if "Good signature" in commit_output:
            commit_key = _signing_key(commit_output)
            lines.append("Good signature on commit")
            if commit_key:
                lines.append(f"Commit signed with: {commit_key}")
                if tag_key and tag_key != commit_key:
                    warnings.append("Tag and commit signed with different keys")
        else:
            lines.append("No valid signature found on commit")
            warnings.append("Commit is not signed")
    except OSError as error:
        return [f"Signature check unavailable: {error}"]

    if warnings:
        lines.append("Warnings:")
        lines.extend(f"- {warning}" for warning in warnings)
    return lines


def locate_build_artifact(source_dir: Path, expected: Optional[str], pattern: Optional[str]) -> Path:
    source_dir = Path(source_dir)
    if expected:
        expected_path = source_dir / expected
        if expected_path.is_file():
            return expected_path
        print(f"[build] expected artifact missing: {expected_path}")

    if pattern:
        print(f"[build] searching for artifacts matching {pattern}")
        matches = sorted(path for path in source_dir.glob(pattern) if path.is_file())
        if len(matches) == 1:
            print(f"[build] found artifact {matches[0]}")
            return matches[0]
        if len(matches) > 1:
            listing = ", ".join(str(path.relative_to(source_dir)) for path in matches)
            raise BuildArtifactNotFoundError(f"Several build outputs match {pattern}: {listing}")

    search_root = (source_dir / expected).parent if expected else source_dir
    while not search_root.exists() and search_root != source_dir:
        search_root = search_root.parent
    listing = sorted(str(path.relative_to(source_dir)) for path in search_root.iterdir()) if search_root.is_dir() else []
    raise BuildArtifactNotFoundError(
        f"Built artifact not found (expected={expected}, pattern={pattern}). "
        f"Contents of {search_root}: {listing[:50]}"
    )


class Builder:
    """Builds a product from a source tree and returns the produced artifact."""

    def build(self, source_dir: Path, target: VerificationTarget) -> BuildArtifact:
        raise NotImplementedError

    def images(self) -> list[str]:
        return []


class ContainerBuilder(Builder):
    def __init__(self, engine: str, product: dict, interactive: bool = False):
        self.engine = engine
        self.product = product
        self.recipe = product.get("build") or {}
        self.interactive = interactive
        self._built_images: list[str] = []

    @property
    def image(self) -> str:
        image = self.recipe.get("image")
        if not image:
            raise EnvironmentCheckError(f"No build image configured for {self.product.get('name')}")
        return image

    def image_command(self, source_dir: Path) -> list[str]:
        dockerfile = self.recipe.get("dockerfile")
        if not dockerfile:
            return [self.engine, "pull", self.image]

        context = Path(source_dir) / self.recipe.get("context", ".")
        command = [self.engine, "build", "--force-rm", "-t", self.image, "-f", str(Path(source_dir) / dockerfile)]
        if self.recipe.get("platform"):
            command.extend(["--platform", self.recipe["platform"]])
        command.append(str(context))
        return command

    def run_command(self, source_dir: Path, fields: dict) -> list[str]:
        source_dir = Path(source_dir).resolve()
        workdir = self.recipe.get("workdir", "/src")
        mount = f"{source_dir}:{workdir}"
        if self.recipe.get("source_readonly"):
            mount += ":ro"

        command = [self.engine, "run", "--rm"]
        if self.interactive:
            command.append("-it")
        if self.recipe.get("privileged"):
            command.append("--privileged")
        command.extend(["--volume", mount, "--workdir", workdir])
        for relative, container_path in self.recipe.get("volumes", []):
            host_path = source_dir / render_template(relative, fields)
            host_path.mkdir(parents=True, exist_ok=True)
            command.extend(["--volume", f"{host_path}:{container_path}"])
        for key, value in (self.recipe.get("env") or {}).items():
            command.extend(["--env", f"{key}={render_template(str(value), fields)}"])

        build_command = render_template(self.recipe["command"], fields)
        if self.interactive:
            build_command = f"{build_command}; {USER_ACTION_HOOK}"
        command.extend([self.image, "bash", "-c", build_command])
        return command

    def build(self, source_dir: Path, target: VerificationTarget) -> BuildArtifact:
        if not self.recipe.get("command"):
            raise EnvironmentCheckError(f"No build command configured for {target.name}")

        image_command = self.image_command(source_dir)
        print(f"[build] image {' '.join(image_command[1:3])} tag={self.image}")
        try:
            run_checked_command(image_command, "Container image build", cwd=source_dir)
        except CommandError as error:
            raise BuildError(str(error)) from error
        if self.recipe.get("dockerfile"):
            self._built_images.append(self.image)

        command = self.run_command(source_dir, target.fields)
        print(f"[build] run image={self.image} interactive={self.interactive}")
        try:
            if self.interactive:
                run_attached_command(command, "Container build run", cwd=source_dir)
            else:
                run_checked_command(command, "Container build run", cwd=source_dir)
        except CommandError as error:
            raise BuildError(str(error)) from error

        expected = self.recipe.get("artifact")
        pattern = self.recipe.get("artifact_glob")
        artifact_path = locate_build_artifact(
            source_dir,
            render_template(expected, target.fields) if expected else None,
            render_template(pattern, target.fields) if pattern else None,
        )
        artifact = describe_artifact(artifact_path)
        print(f"[build] artifact {artifact.path} size={format_bytes(artifact.size)} sha256={artifact.sha256}")
        return artifact

    def images(self) -> list[str]:
        return list(self._built_images)


def run_adb(args: list[str], action: str) -> str:
    ensure_tool_exists("adb")
    try:
        return run_checked_command(["adb", *args], action).stdout
    except CommandError as error:
        raise DeviceError(str(error)) from error


def ensure_device_connected() -> list[str]:
    output = run_adb(["devices"], "List devices")
    devices = []
    for line in output.splitlines()[1:]:
        parts = line.split()
        if len(parts) >= 2 and parts[1] == "device":
            devices.append(parts[0])
    if not devices:
        raise DeviceError(
            "No phone is connected. Plug the phone in via USB, enable Developer Options and "
            "USB Debugging, and accept the debugging prompt on the device."
        )
    print(f"[device] connected {', '.join(devices)}")
    return devices


def is_package_installed(app_id: str) -> bool:
    output = run_adb(["shell", "pm", "list", "packages", app_id], "List packages")
    return any(line.strip() == f"package:{app_id}" for line in output.splitlines())


def list_device_apk_paths(app_id: str) -> list[str]:
    output = run_adb(["shell", "pm", "path", app_id], "Resolve APK paths")
    paths = []
    for line in output.splitlines():
        line = line.strip()
        if line.startswith("package:"):
            paths.append(line[len("package:"):])
    return paths


def pull_device_apks(app_id: str, dest_dir: Path) -> Path:
    ensure_device_connected()
    if not is_package_installed(app_id):
        raise DeviceError(f"The app '{app_id}' is not installed on the connected device.")

    apk_paths = list_device_apk_paths(app_id)
    if not apk_paths:
        raise DeviceError(f"Could not find any APK path for {app_id}")
    split = any("split_" in path or "config." in path for path in apk_paths)
    print(f"[device] {app_id} uses {'split' if split else 'single'} APKs ({len(apk_paths)} files)")

    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    for apk_path in apk_paths:
        print(f"[device] pull {apk_path}")
        run_adb(["pull", apk_path, str(dest_dir)], "Pull APK")

    base_apk = dest_dir / "base.apk"
    if not base_apk.is_file():
        raise DeviceError(f"base.apk was not pulled for {app_id} (paths: {apk_paths})")
    return base_apk


def acquire_reference(
    config: RunConfig,
    dest_dir: Path,
    sleep: Optional[Callable[[float], None]] = None,
) -> Path:
    if config.reference_path:
        print(f"[download] using local reference {config.reference_path}")
        return validate_local_artifact(config.reference_path)

    source = config.product.get("reference") or {}
    fields = config.target.fields
    if not source.get("url"):
        raise EnvironmentCheckError(
            f"{config.target.name} has no download URL; provide the official artifact with -a/--apk, "
            "--reference or -x/--from-device"
        )

    templated = [render_template(source["url"], fields)]
    templated.extend(render_template(alt, fields) for alt in source.get("alt_urls", []))
    env_var = "WALLET_VERIFY_{}_URLS".format(re.sub(r"[^A-Z0-9]", "_", config.target.product.upper()))
    urls = resolve_download_urls(templated, env_var)

    filename = render_template(source["filename"], fields) if source.get("filename") else os.path.basename(templated[0])
    target_path = Path(dest_dir) / filename
    download_with_url_fallback(urls, target_path, hint=source.get("hint"), sleep=sleep)
    return validate_local_artifact(target_path)


def _read_u32_le(data: bytes, offset: int) -> int:
    if offset < 0 or len(data) < offset + 4:
        raise HeaderParseError(f"Firmware header truncated: need 4 bytes at offset {offset}, have {len(data)}")
    return struct.unpack_from("<I", data, offset)[0]


def parse_firmware_header(data: bytes) -> FirmwareHeader:
    magic = bytes(data[:4])
    if magic == TRZF_MAGIC:
        payload_length = _read_u32_le(data, 12)
        header_length = FIRMWARE_HEADER_PREFIX
    elif magic == OKTV_MAGIC:
        vendor_header_length = _read_u32_le(data, 4)
        payload_length = _read_u32_le(data, vendor_header_length + 12)
        header_length = vendor_header_length + FIRMWARE_HEADER_PREFIX
    else:
        raise HeaderParseError(f"Unknown firmware container format (magic={magic!r})")

    return FirmwareHeader(
        kind=magic.decode("ascii"),
        header_length=header_length,
        payload_length=payload_length,
        total_size=header_length + payload_length,
    )


def extract_firmware_payload(data: bytes) -> bytes:
    header = parse_firmware_header(data)
    if header.total_size > len(data):
        raise HeaderParseError(
            f"{header.kind} image declares {header.total_size} bytes but only {len(data)} are present"
        )
    return bytes(data[: header.total_size])


def strip_prefix(data: bytes, offset: int) -> bytes:
    if offset < 0 or offset > len(data):
        raise ValueError(f"Cannot strip {offset} bytes from {len(data)}-byte artifact")
    return bytes(data[offset:])


def zero_range(data: bytes, offset: int, length: int) -> bytes:
    if offset < 0 or length < 0 or offset + length > len(data):
        raise ValueError(f"Range {offset}+{length} is outside the {len(data)}-byte artifact")
    return bytes(data[:offset]) + bytes(length) + bytes(data[offset + length:])


def device_firmware_hash(version: bytes, firmware: bytes, max_size: int = BITBOX02_MAX_FIRMWARE_SIZE) -> str:
    """Hash shown by the device: sha256(sha256(version || firmware || 0xFF padding to max_size))."""
    padding_length = max_size - len(firmware)
    if padding_length < 0:
        raise ValueError(f"Firmware is {len(firmware)} bytes, larger than the {max_size}-byte maximum")
    inner = hashlib.sha256(bytes(version) + bytes(firmware) + b"\xff" * padding_length).digest()
    return hashlib.sha256(inner).hexdigest()


def split_signed_firmware(
    data: bytes, header_length: int, version_offset: int, version_length: int
) -> Tuple[bytes, bytes]:
    if len(data) < header_length or version_offset + version_length > header_length:
        raise HeaderParseError(f"Signed firmware shorter than its {header_length}-byte header")
    header = data[:header_length]
    return bytes(header[version_offset: version_offset + version_length]), bytes(data[header_length:])


def reference_device_hash(reference: BuildArtifact, layout: dict) -> str:
    data = Path(reference.path).read_bytes()
    version, payload = split_signed_firmware(
        data, int(layout["header_length"]), int(layout["version_offset"]), int(layout["version_length"])
    )
    try:
        return device_firmware_hash(version, payload, int(layout.get("max_size", BITBOX02_MAX_FIRMWARE_SIZE)))
    except ValueError as error:
        raise NormalizationError(str(error)) from error


def unpack_archive(archive: Path, dest: Path) -> Path:
    dest = Path(dest)
    if dest.exists():
        shutil.rmtree(dest)
    dest.mkdir(parents=True)
    try:
        with zipfile.ZipFile(archive, "r") as zf:
            zf.extractall(dest)
    except (zipfile.BadZipFile, OSError) as error:
        raise NormalizationError(f"Failed to extract {archive}: {error}") from error
    return dest


def _as_int(value: Union[int, str]) -> int:
    return int(value, 0) if isinstance(value, str) else int(value)


def steps_for_side(steps: Sequence[dict], side: str) -> list[dict]:
    return [step for step in steps if step.get("side", "both") in ("both", side)]


def normalization_mode(steps: Sequence[dict]) -> str:
    return "directory" if any(step.get("op") == "unzip" for step in steps) else "binary"


def normalize_artifact(artifact: BuildArtifact, steps: Sequence[dict], dest: Path, side: str) -> NormalizedArtifact:
    applicable = steps_for_side(steps, side)
    dest = Path(dest)

    if normalization_mode(applicable) == "directory":
        if len(applicable) != 1:
            raise NormalizationError("unzip cannot be combined with other normalization steps")
        print(f"[normalize] {side} unzip {artifact.path.name}")
        unpack_archive(artifact.path, dest)
        return NormalizedArtifact(source=artifact, mode="directory", path=dest, steps=("unzip",))

    data = Path(artifact.path).read_bytes()
    applied: list[str] = []
    for step in applicable:
        op = step.get("op")
        try:
            if op == "header_total":
                data = extract_firmware_payload(data)
                applied.append("header_total")
            elif op == "strip":
                offset = _as_int(step["offset"])
                data = strip_prefix(data, offset)
                applied.append(f"strip:{offset}")
            elif op == "zero":
                offset = _as_int(step["offset"])
                length = _as_int(step["length"])
                data = zero_range(data, offset, length)
                applied.append(f"zero:{offset}+{length}")
            else:
                raise NormalizationError(f"Unknown normalization step: {op}")
        except ValueError as error:
            raise NormalizationError(f"{side} artifact {artifact.path.name}: {error}") from error

    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_bytes(data)
    digest = sha256_bytes(data)
    print(f"[normalize] {side} steps={applied or ['none']} sha256={digest}")
    return NormalizedArtifact(source=artifact, mode="binary", path=dest, sha256=digest, steps=tuple(applied))


def _entry_kind(path: Path) -> str:
    return "directory" if path.is_dir() else "regular file"


def _diff_dir(left: Path, right: Path, lines: list[str]) -> None:
    left_names = {entry.name for entry in left.iterdir()}
    right_names = {entry.name for entry in right.iterdir()}

    for name in sorted(left_names | right_names):
        left_path = left / name
        right_path = right / name
        if name not in right_names:
            lines.append(f"Only in {left}: {name}")
        elif name not in left_names:
            lines.append(f"Only in {right}: {name}")
        elif left_path.is_dir() and right_path.is_dir():
            _diff_dir(left_path, right_path, lines)
        elif left_path.is_dir() != right_path.is_dir():
            lines.append(
                f"File {left_path} is a {_entry_kind(left_path)} while file {right_path} is a {_entry_kind(right_path)}"
            )
        elif not filecmp.cmp(left_path, right_path, shallow=False):
            lines.append(f"Files {left_path} and {right_path} differ")


def diff_trees(left: Path, right: Path) -> list[str]:
    """Brief recursive diff of two directory trees, in ``diff --brief --recursive`` wording."""
    lines: list[str] = []
    _diff_dir(Path(left), Path(right), lines)
    return lines


def filter_differences(lines: Sequence[str], ignore_patterns: Sequence[str] = DEFAULT_IGNORE_PATTERNS) -> list[str]:
    compiled = [re.compile(pattern) for pattern in ignore_patterns]
    return [
        line for line in lines if line.strip() and not any(pattern.search(line) for pattern in compiled)
    ]


def compare_directories(
    left: Path,
    right: Path,
    ignore_patterns: Sequence[str] = DEFAULT_IGNORE_PATTERNS,
    review_patterns: Sequence[str] = (),
) -> Tuple[str, list[str], int]:
    lines = diff_trees(left, right)
    remaining = filter_differences(lines, ignore_patterns)
    ignored_count = len([line for line in lines if line.strip()]) - len(remaining)

    if not remaining:
        verdict = VERDICT_REPRODUCIBLE
    elif review_patterns and not filter_differences(remaining, review_patterns):
        verdict = VERDICT_MANUAL
    else:
        verdict = VERDICT_NOT_REPRODUCIBLE
    print(f"[compare] directory differences={len(remaining)} ignored={ignored_count} verdict={verdict}")
    return verdict, remaining, ignored_count


def differing_offsets(left: bytes, right: bytes, chunk_size: int = 4096) -> list[int]:
    offsets: list[int] = []
    common = min(len(left), len(right))
    for start in range(0, common, chunk_size):
        end = min(start + chunk_size, common)
        if left[start:end] == right[start:end]:
            continue
        offsets.extend(index for index in range(start, end) if left[index] != right[index])
    return offsets


def cluster_offsets(offsets: Sequence[int]) -> list[Tuple[int, int]]:
    regions: list[Tuple[int, int]] = []
    for offset in offsets:
        if regions and offset == regions[-1][1] + 1:
            regions[-1] = (regions[-1][0], offset)
        else:
            regions.append((offset, offset))
    return regions


def ascii_strings_near(data: bytes, offset: int, window: int = 64, min_length: int = 4) -> list[str]:
    start = max(0, offset - window)
    chunk = data[start: offset + window]
    return [match.decode("ascii") for match in re.findall(rb"[\x20-\x7e]{%d,}" % min_length, chunk)]


def describe_binary_differences(left: bytes, right: bytes, max_regions: int = 10, context_regions: int = 3) -> list[str]:
    lines = [f"Built size: {len(left)} bytes", f"Reference size: {len(right)} bytes"]
    if len(left) != len(right):
        lines.append(f"Size differs by {abs(len(left) - len(right))} bytes")

    offsets = differing_offsets(left, right)
    lines.append(f"Differing bytes in common range: {len(offsets)}")
    if not offsets:
        return lines

    regions = cluster_offsets(offsets)
    lines.append(f"First difference at offset: {offsets[0]}")
    lines.append(f"Last difference at offset: {offsets[-1]}")
    lines.append(f"Difference span: {offsets[-1] - offsets[0]} bytes")
    lines.append(f"Contiguous regions: {len(regions)}")
    for index, (start, end) in enumerate(regions[:max_regions], start=1):
        lines.append(f"Region {index}: bytes {start} to {end} ({end - start + 1} bytes)")
    if len(regions) > max_regions:
        lines.append(f"... {len(regions) - max_regions} more regions")

    for start, _ in regions[:context_regions]:
        built_strings = ascii_strings_near(left, start)
        reference_strings = ascii_strings_near(right, start)
        if built_strings or reference_strings:
            lines.append(f"Text near offset {start}: built={built_strings} reference={reference_strings}")
    return lines


def compare_binaries(
    built: NormalizedArtifact,
    reference: NormalizedArtifact,
    extra_hashes: Optional[dict] = None,
    diagnose: bool = True,
) -> ComparisonResult:
    match = built.sha256 == reference.sha256
    verdict = VERDICT_REPRODUCIBLE if match else VERDICT_NOT_REPRODUCIBLE
    differences: tuple = ()
    diagnostics: tuple = ()

    if not match:
        left = Path(built.path).read_bytes()
        right = Path(reference.path).read_bytes()
        regions = cluster_offsets(differing_offsets(left, right))
        differences = tuple(f"bytes {start}-{end}" for start, end in regions[:50])
        if len(left) != len(right):
            differences += (f"size {len(left)} != {len(right)}",)
        if diagnose:
            diagnostics = tuple(describe_binary_differences(left, right))

    print(f"[compare] binary built={built.sha256} reference={reference.sha256} verdict={verdict}")
    return ComparisonResult(
        verdict=verdict,
        differences=differences,
        built_hash=built.source.sha256,
        reference_hash=reference.source.sha256,
        built_normalized_hash=built.sha256 or "",
        reference_normalized_hash=reference.sha256 or "",
        extra_hashes=dict(extra_hashes or {}),
        diagnostics=diagnostics,
    )


def compare_artifacts(built: BuildArtifact, reference: BuildArtifact, product: dict, dest_dir: Path) -> ComparisonResult:
    steps = product.get("normalize") or []
    dest_dir = Path(dest_dir)

    if normalization_mode(steps) == "directory":
        normalized_built = normalize_artifact(built, steps, dest_dir / "fromBuild", "built")
        normalized_reference = normalize_artifact(reference, steps, dest_dir / "fromReference", "reference")
        verdict, remaining, ignored_count = compare_directories(
            normalized_reference.path,
            normalized_built.path,
            product.get("ignore", DEFAULT_IGNORE_PATTERNS),
            product.get("review", ()),
        )
        return ComparisonResult(
            verdict=verdict,
            differences=tuple(remaining),
            built_hash=built.sha256,
            reference_hash=reference.sha256,
            ignored_count=ignored_count,
        )

    normalized_built = normalize_artifact(built, steps, dest_dir / "built.normalized.bin", "built")
    normalized_reference = normalize_artifact(reference, steps, dest_dir / "reference.normalized.bin", "reference")
    extra_hashes = {}
    if product.get("device_hash"):
        extra_hashes["deviceHash"] = reference_device_hash(reference, product["device_hash"])
    result = compare_binaries(normalized_built, normalized_reference, extra_hashes)
    if result.verdict == VERDICT_NOT_REPRODUCIBLE and product.get("mismatch_verdict"):
        result = replace(result, verdict=product["mismatch_verdict"])
    return result


def exit_code_for(verdict: str) -> int:
    if verdict == VERDICT_REPRODUCIBLE:
        return 0
    if verdict == VERDICT_BUILD_FAILED:
        return 2
    return 1


def follow_up_hint(comparison_paths: Sequence[Path], built: Optional[Path], reference: Optional[Path]) -> str:
    lines = ["Run a full"]
    if len(comparison_paths) == 2:
        left, right = comparison_paths
        lines.append(f"diff --recursive {left} {right}")
        lines.append(f"meld {left} {right}")
        lines.append("or")
    if built and reference:
        lines.append(f'diffoscope "{reference}" "{built}"')
    lines.append("for more details.")
    return "\n".join(lines)


def format_results_block(
    target: VerificationTarget,
    result: ComparisonResult,
    commit: str = "",
    signer: str = "",
    signature_summary: Sequence[str] = (),
    follow_up: str = "",
) -> str:
    lines = ["===== Begin Results ====="]
    if target.kind == "apk":
        lines.extend(
            [
                f"appId:          {target.app_id}",
                f"signer:         {signer or 'N/A'}",
                f"apkVersionName: {target.version}",
                f"apkVersionCode: {target.version_code}",
                f"verdict:        {result.verdict}",
                f"appHash:        {result.reference_hash or 'N/A'}",
                f"commit:         {commit or 'N/A'}",
            ]
        )
    else:
        lines.extend(
            [
                f"firmware:       {target.name}",
                f"version:        {target.version}",
                f"type:           {target.variant or 'N/A'}",
                f"verdict:        {result.verdict}",
                f"referenceHash:  {result.reference_hash or 'N/A'}",
                f"builtHash:      {result.built_hash or 'N/A'}",
                f"referenceNormalizedHash: {result.reference_normalized_hash or 'N/A'}",
                f"builtNormalizedHash:     {result.built_normalized_hash or 'N/A'}",
            ]
        )
        for name, value in result.extra_hashes.items():
            lines.append(f"{name + ':':<16}{value}")
        lines.extend(
            [
                f"repository:     {target.repo}",
                f"tag:            {target.tag}",
                f"commit:         {commit or 'N/A'}",
            ]
        )

    lines.append("")
    lines.append("Diff:")
    lines.extend(result.differences or ["(none)"])
    if result.ignored_count:
        lines.append(f"({result.ignored_count} ignored differences, e.g. META-INF signing files)")

    if result.diagnostics:
        lines.append("")
        lines.append("Difference analysis:")
        lines.extend(result.diagnostics)

    if signature_summary:
        lines.append("")
        lines.append("Revision, tag (and its signature):")
        lines.extend(signature_summary)

    lines.append("===== End Results =====")
    if follow_up:
        lines.append(follow_up)
    return "\n".join(lines)


def build_results_document(
    target: VerificationTarget,
    result: ComparisonResult,
    filename: str,
    architecture: str,
    now: Optional[datetime] = None,
) -> dict:
    now = now or datetime.now(timezone.utc)
    entry: dict = {"architecture": architecture}
    firmware_type = target.variant or target.fields.get("firmware_type")
    if target.kind == "firmware" or firmware_type:
        entry["firmware_type"] = firmware_type or ""
    entry["files"] = [
        {
            "filename": filename,
            "hash": result.built_normalized_hash or result.built_hash,
            "match": result.verdict == VERDICT_REPRODUCIBLE,
            "expected_hash": result.reference_normalized_hash or result.reference_hash,
            "status": result.verdict,
        }
    ]
    return {
        "date": now.strftime("%Y-%m-%dT%H:%M:%S+0000"),
        "script_version": SCRIPT_VERSION,
        "build_type": target.kind,
        "results": [entry],
    }


def write_results_file(path: Union[str, Path], document: dict) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(document, sort_keys=False, default_flow_style=False), encoding="utf-8")
    print(f"[report] results written to {path}")
    return path


def results_filename(target: VerificationTarget, product: dict, reference: Optional[BuildArtifact]) -> str:
    if reference is not None:
        return reference.path.name
    source = product.get("reference") or {}
    if source.get("filename"):
        try:
            return render_template(source["filename"], target.fields)
        except EnvironmentCheckError:
            pass
    return f"{target.app_id or target.product}-{target.version}"


def results_architecture(target: VerificationTarget, product: dict) -> str:
    return target.fields.get("abi") or product.get("architecture") or ("universal" if target.kind == "apk" else "")


def remove_path(path: Union[str, Path]) -> None:
    path = Path(path)
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        elif path.exists() or path.is_symlink():
            path.unlink()
    except OSError as error:
        print(f"Warning: failed to remove {path}: {error}")


def remove_images(engine: str, images: Sequence[str]) -> None:
    for command in [[engine, "rmi", "-f", image] for image in images] + [[engine, "image", "prune", "-f"]]:
        try:
            subprocess.run(command, capture_output=True, text=True)
        except OSError as error:
            print(f"Warning: cleanup command failed {command}: {error}")


def cleanup_run(engine: Optional[str], paths: Sequence[Union[str, Path]], images: Sequence[str] = ()) -> None:
    print("[cleanup] removing temporary files and images")
    for path in paths:
        remove_path(path)
    if engine:
        remove_images(engine, images)


def default_work_dir(product_key: str) -> Path:
    return Path(WORK_ROOT) / f"wallet-verify-{product_key}"


def cleanup_only(engine: Optional[str], product_key: str, product: dict) -> None:
    # exact path, wallet-verify-onekey must not match wallet-verify-onekey-pro
    images = []
    if (product.get("build") or {}).get("dockerfile"):
        images.append(product["build"]["image"])
    cleanup_run(engine, [default_work_dir(product_key)], images)
    print("[cleanup] completed")


def prepare_work_dir(work_dir: Path) -> Path:
    work_dir = Path(work_dir)
    if work_dir.exists():
        shutil.rmtree(work_dir)
    work_dir.mkdir(parents=True)
    return work_dir


def stage_reference(reference_path: Path, source_dir: Path, relative: str) -> Path:
    staged = Path(source_dir) / relative
    staged.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(reference_path, staged)
    print(f"[download] staged reference into {staged}")
    return staged


def run_pipeline(
    config: RunConfig,
    builder: Optional[Builder] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> PipelineOutcome:
    target = config.target
    product = config.product
    work_dir = Path(config.work_dir)
    source_dir = work_dir / "source"
    reference_dir = work_dir / "reference"
    reference_source = product.get("reference") or {}
    builder = builder or ContainerBuilder(config.engine, product, interactive=config.interactive)

    reference_path: Optional[Path] = None
    if reference_source.get("stage_into"):
        reference_path = acquire_reference(config, reference_dir, sleep=sleep)

    commit = clone_source(target, product, source_dir, sleep=sleep)
    signature_summary = tag_signature_summary(source_dir, target.tag)

    if reference_path is not None:
        stage_reference(reference_path, source_dir, render_template(reference_source["stage_into"], target.fields))

    built = builder.build(source_dir, target)

    if reference_source.get("built_path"):
        derived = source_dir / render_template(reference_source["built_path"], target.fields)
        if not derived.is_file():
            raise BuildArtifactNotFoundError(f"Build did not produce the reference image {derived}")
        reference_path = derived
    elif reference_path is None:
        reference_path = acquire_reference(config, reference_dir, sleep=sleep)

    reference = describe_artifact(reference_path)
    print(f"[download] reference {reference.path} size={format_bytes(reference.size)} sha256={reference.sha256}")

    comparison_dir = work_dir / "compare"
    result = compare_artifacts(built, reference, product, comparison_dir)
    comparison_paths: tuple = ()
    if normalization_mode(product.get("normalize") or []) == "directory":
        comparison_paths = (comparison_dir / "fromReference", comparison_dir / "fromBuild")

    return PipelineOutcome(
        result=result,
        commit=commit,
        built=built,
        reference=reference,
        signature_summary=tuple(signature_summary),
        comparison_paths=comparison_paths,
    )


def failed_result(reference: Optional[BuildArtifact] = None, reason: str = "") -> ComparisonResult:
    return ComparisonResult(
        verdict=VERDICT_BUILD_FAILED,
        reference_hash=reference.sha256 if reference else "",
        differences=(reason,) if reason else (),
    )


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=(
            "Verify that a wallet app or firmware builds reproducibly: clone the claimed source, build it "
            "in a container, obtain the official artifact and compare both after normalization."
        )
    )
    parser.add_argument("product", nargs="?", help="Product key, see --list-products")
    parser.add_argument("--config", default=DEFAULT_CONFIG_FILE, help="Path to JSON config file")
    parser.add_argument("--list-products", action="store_true", help="List known products and exit")
    parser.add_argument("-a", "--apk", help="The official APK to verify (app products)")
    parser.add_argument("-x", "--from-device", action="store_true", help="Pull the installed APK from a device via adb")
    parser.add_argument("--reference", help="Official firmware file to compare against instead of downloading it")
    parser.add_argument("-v", "--version", help="Firmware version (firmware products)")
    parser.add_argument("-t", "--type", dest="variant", help="Firmware/device type, e.g. btc or multi")
    parser.add_argument("-r", "--revision-override", help="git revision to use instead of the derived tag")
    parser.add_argument("--hash", dest="short_hash", help="Short commit hash used in release asset names")
    parser.add_argument("--date", dest="release_date", help="Release date (MMDD) used in release asset names")
    parser.add_argument("-n", "--not-interactive", action="store_true", help="Never pause for user action in the build container")
    parser.add_argument("-c", "--cleanup", action="store_true", help="Remove temporary files and images after the run")
    parser.add_argument("--cleanup-only", action="store_true", help="Remove leftovers of previous runs and exit")
    parser.add_argument("--results-file", help=f"Where to write the YAML results (default: ./{DEFAULT_RESULTS_FILE})")
    parser.add_argument("--no-results-file", action="store_true", help="Do not write a YAML results file")
    parser.add_argument("--work-dir", help="Working directory (default: <work root>/wallet-verify-<product>)")
    parser.add_argument("--engine", choices=list(CONTAINER_ENGINES), help="Force the container engine")
    return parser


def pick(cli_value, config: dict, key: str, default=None):
    if cli_value not in (None, False, ""):
        return cli_value
    return config.get(key, default)


def resolve_results_file(args, config: dict) -> Optional[Path]:
    if pick(args.no_results_file, config, "no_results_file", False):
        return None
    return Path(pick(args.results_file, config, "results_file", DEFAULT_RESULTS_FILE)).resolve()


def print_products(products: dict) -> None:
    for key in sorted(products):
        product = products[key]
        variants = ", ".join(product.get("variants") or {}) or "-"
        print(f"{key:<14} {product.get('kind', 'firmware'):<9} {product.get('name', key)} (types: {variants})")


def resolve_reference_apk(args, config: dict, product: dict, engine: str, work_dir: Path) -> Path:
    apk = pick(args.apk, config, "apk")
    if apk:
        return validate_local_artifact(apk)
    if pick(args.from_device, config, "from_device", False):
        if not (product.get("reference") or {}).get("device"):
            raise EnvironmentCheckError(f"Device extraction is not enabled for {product.get('name')}")
        return pull_device_apks(product["app_id"], work_dir / "device")
    raise EnvironmentCheckError("APK path is required! (use -a/--apk or -x/--from-device)")


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    config = load_config(args.config)
    products = merge_products(PRODUCTS, config.get("products"))

    if args.list_products:
        print_products(products)
        return 0

    product_key = args.product or config.get("product")
    cleanup_requested = bool(pick(args.cleanup, config, "cleanup", False))
    results_file: Optional[Path] = None
    work_dir: Optional[Path] = None
    target: Optional[VerificationTarget] = None
    product: dict = {}
    engine: Optional[str] = None
    builder: Optional[ContainerBuilder] = None
    reference: Optional[BuildArtifact] = None
    metadata: Optional[ApkMetadata] = None

    try:
        product = resolve_product(product_key, products)
        engine = detect_container_engine(
            pick(args.engine, config, "engine"), product.get("engine_order", CONTAINER_ENGINES)
        )
        if pick(args.cleanup_only, config, "cleanup_only", False):
            cleanup_only(engine, product_key, product)
            return 0

        interactive = product.get("kind") == "apk" and not pick(args.not_interactive, config, "not_interactive", False)
        builder = ContainerBuilder(engine, product, interactive=interactive)
        results_file = resolve_results_file(args, config)
        work_dir = prepare_work_dir(Path(pick(args.work_dir, config, "work_dir") or default_work_dir(product_key)))
        print(f"[input] product={product_key} work-dir={work_dir}")

        reference_path = pick(args.reference, config, "reference")
        if product.get("kind") == "apk":
            reference_path = resolve_reference_apk(args, config, product, engine, work_dir)
            metadata = extract_apk_metadata(engine, reference_path, work_dir)
            check_expected_app_id(metadata, product)
            reference = describe_artifact(reference_path)

        target = build_target(
            product_key,
            product,
            version=pick(args.version, config, "version"),
            variant=pick(args.variant, config, "type"),
            revision_override=pick(args.revision_override, config, "revision_override"),
            metadata=metadata,
            short_hash=pick(args.short_hash, config, "hash"),
            release_date=pick(args.release_date, config, "date"),
        )
        print(f"[input] verifying {target.name} version={target.version} tag={target.tag}")

        run_config = RunConfig(
            target=target,
            product=product,
            engine=engine,
            work_dir=work_dir,
            results_file=results_file,
            reference_path=Path(reference_path) if reference_path else None,
            interactive=interactive,
            cleanup=cleanup_requested,
        )
        outcome = run_pipeline(run_config, builder=builder)
    except (VerificationError, OSError) as error:
        print(f"Error: {error}", file=sys.stderr)
        if target is not None and results_file is not None:
            document = build_results_document(
                target,
                failed_result(reference, str(error)),
                results_filename(target, product, reference),
                results_architecture(target, product),
            )
            try:
                write_results_file(results_file, document)
            except OSError as write_error:
                print(f"Warning: could not write results to {results_file}: {write_error}")
        return exit_code_for(VERDICT_BUILD_FAILED)
    else:
        result = outcome.result
        follow_up = "" if cleanup_requested else follow_up_hint(
            outcome.comparison_paths, outcome.built.path, outcome.reference.path
        )
        print(
            format_results_block(
                target,
                result,
                commit=outcome.commit,
                signer=metadata.signer if metadata else "",
                signature_summary=outcome.signature_summary,
                follow_up=follow_up,
            )
        )

        if results_file is not None:
            document = build_results_document(
                target,
                result,
                results_filename(target, product, outcome.reference),
                results_architecture(target, product),
            )
            write_results_file(results_file, document)

        if not cleanup_requested:
            print(f"Verification files available at: {work_dir}")
        return exit_code_for(result.verdict)
    finally:
        # runs on failures too
        if cleanup_requested and work_dir is not None:
            cleanup_run(engine, [work_dir], builder.images() if builder else [])


if __name__ == "__main__":
    raise SystemExit(main())
