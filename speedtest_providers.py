import os
import json
import random
import logging
import subprocess

# === EXTERNAL DEPENDENCIES ===
# pip install speedtest-cli
import speedtest

from storage import APPROXIMATE, EXTERNAL_TOOL, Reading

log = logging.getLogger("speedtest_providers")

DEFAULT_METHOD = EXTERNAL_TOOL

CONFIG = {
    "cli_binary": os.environ.get("SPEEDTEST_BIN", "speedtest"),
    "cli_timeout": 120,   # seconds
    "version_timeout": 15,  # seconds
    "probe_timeout": 10,  # seconds
    "server_id": None,    # e.g. 12345
}

# Approximate variant: only download is measured.
UPLOAD_RATIO = 0.4
PING_RANGE = (10.0, 30.0)
JITTER_RANGE = (1.0, 4.0)
ESTIMATED_FIELDS = ("upload", "ping", "jitter")
ROUNDING_MARGIN = 0.005

INSTALL_HINT = """Install the Ookla Speedtest CLI:

[Debian/Ubuntu/WSL2]
curl -s https://packagecloud.io/install/repositories/ookla/speedtest-cli/script.deb.sh | sudo bash
sudo apt-get install speedtest

[Windows]
winget install Ookla.Speedtest.CLI

[macOS]
brew tap teamookla/speedtest && brew install speedtest
"""


class MeasurementError(Exception):
    """A provider could not produce a reading; the cycle is skipped."""


def _uniform(bounds):
    # upper bound stays exclusive after rounding to 2 decimals
    low, high = bounds
    return low + random.random() * (high - ROUNDING_MARGIN - low)


# ---------- SPEEDTEST (python) download probe ----------
def measure_approximate() -> Reading:
    """Download measured with speedtest-cli; upload, ping and jitter are estimates.

    Upload is a fixed fraction of download and ping/jitter are drawn at random
    from a plausible range. The reading lists these in ``estimated`` so they
    are never mistaken for values from the external tool.
    """
    try:
        st = speedtest.Speedtest(secure=True, timeout=CONFIG["probe_timeout"])
        st.get_servers([CONFIG["server_id"]] if CONFIG["server_id"] else [])
        best = st.get_best_server()
        down_mbps = st.download() / 1_000_000
    except (speedtest.SpeedtestException, OSError) as e:
        raise MeasurementError(f"download probe failed: {e}") from e

    return Reading.create(
        download=down_mbps,
        upload=down_mbps * UPLOAD_RATIO,
        ping=_uniform(PING_RANGE),
        jitter=_uniform(JITTER_RANGE),
        server=best.get("sponsor") or best.get("host"),
        method=APPROXIMATE,
        estimated=ESTIMATED_FIELDS,
    )


# ---------- SPEEDTEST (Ookla CLI) ----------
def cli_available(binary=None) -> bool:
    try:
        subprocess.run(
            [binary or CONFIG["cli_binary"], "--version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
            timeout=CONFIG["version_timeout"],
        )
    except (OSError, subprocess.SubprocessError):
        return False
    return True


def parse_cli_output(out) -> Reading:
    """Convert ``speedtest --format=json`` output (bandwidth in bytes/s) to a Reading."""
    try:
        r = json.loads(out)
        return Reading.create(
            download=r["download"]["bandwidth"] * 8 / 1_000_000,
            upload=r["upload"]["bandwidth"] * 8 / 1_000_000,
            ping=r["ping"]["latency"],
            jitter=r["ping"]["jitter"],
            server=(r.get("server") or {}).get("name"),
            isp=r.get("isp"),
            method=EXTERNAL_TOOL,
        )
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        raise MeasurementError(f"unparsable speedtest output: {e}") from e


def measure_external_tool() -> Reading:
    binary = CONFIG["cli_binary"]
    if not cli_available(binary):
        log.error("Ookla Speedtest CLI '%s' is not installed.\n%s", binary, INSTALL_HINT)
        raise MeasurementError(f"dependency missing: '{binary}' not found, install the Ookla Speedtest CLI")

    log.info("Measuring (Ookla Speedtest CLI)...")
    try:
        out = subprocess.check_output(
            [binary, "--format=json", "--accept-license", "--accept-gdpr"],
            timeout=CONFIG["cli_timeout"],
        )
    except (OSError, subprocess.SubprocessError) as e:
        raise MeasurementError(f"speedtest CLI failed: {e}") from e
    return parse_cli_output(out)


PROVIDERS = {
    APPROXIMATE: measure_approximate,
    EXTERNAL_TOOL: measure_external_tool,
}


def measure(method=None) -> Reading:
    """Single entry point: run the provider selected by ``method``."""
    provider = PROVIDERS.get(method or DEFAULT_METHOD)
    if provider is None:
        raise MeasurementError(f"unknown measurement method: {method!r}")
    return provider()
