"""Page load probe.

Measures page load times for a list of URLs, with and without a set of
third-party script prefixes blocked, on desktop and on an emulated mobile
device. Raw timings are exported to an Excel workbook.
"""

import os
import sys
import time
import tomllib
import argparse
from datetime import datetime, timezone
from functools import partial
from pathlib import Path

import pandas as pd
from openpyxl.utils import get_column_letter
from playwright.sync_api import sync_playwright, Error as PlaywrightError

__version__ = "1.0.0"

# ================= CONFIG =================
DEFAULT_URL_FILE = "pages.csv"
DEFAULT_BLOCKLIST_FILE = "blocklist.txt"
DEFAULT_OUTPUT_DIR = "testResults"
DEFAULT_DEVICE = "iPhone 12"
DEFAULT_BROWSER = "chromium"

BROWSERS = ("chromium", "firefox", "webkit")

NAVIGATION_TIMEOUT_MS = 30000
LOADS_PER_SAMPLE = 3
NO_RESPONSE = "no response"

CONFIG_FILENAME = "page_load_probe.toml"
CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / "page_load_probe",
]

SHEET_NAME = "Performance Results"

# (header, width)
REPORT_COLUMNS = [
    ("URL", 30),
    ("Device Type", 15),
    ("Page Load 1 (ms)", 15),
    ("Page Load 2 (ms)", 15),
    ("Page Load 3 (ms)", 15),
    ("Blocked Page Load 1 (ms)", 20),
    ("Blocked Page Load 2 (ms)", 20),
    ("Blocked Page Load 3 (ms)", 20),
]
# ==========================================


class ProbeInputError(Exception):
    """Raised when the URL list cannot be turned into a usable list of URLs."""


# ================= LOGGING =================

def log(msg, level="INFO"):
    stream = sys.stdout if level == "INFO" else sys.stderr
    print(f"[{level}] {msg}", file=stream, flush=True)


def clean_error_message(message):
    if not message:
        return ""

    text = str(message).strip()
    marker = "=========================== logs ==========================="
    if marker in text:
        text = text.split(marker, 1)[0].strip()

    if "\n" in text:
        text = text.splitlines()[0]

    return text


# ================= CLI & CONFIG =================

def parse_args(argv=None):
    # Defaults stay None so config values can fill in what the CLI left unset.
    p = argparse.ArgumentParser(
        "page-load-probe",
        description="Measure page load times with and without blocked scripts.",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument("-c", "--config", help="Path to a TOML config file")
    p.add_argument("--urls", help=f"CSV file whose first row lists the URLs (default: {DEFAULT_URL_FILE})")
    p.add_argument("--blocklist", help=f"Text file with one URL prefix to block per line (default: {DEFAULT_BLOCKLIST_FILE})")
    p.add_argument("--output-dir", dest="output_dir", help=f"Report directory (default: {DEFAULT_OUTPUT_DIR})")
    p.add_argument("--device", help=f"Playwright device name used for mobile runs (default: {DEFAULT_DEVICE})")
    p.add_argument("--browser", choices=BROWSERS, help=f"Browser engine (default: {DEFAULT_BROWSER})")
    p.add_argument("--timeout", dest="timeout_ms", type=int, help=f"Navigation timeout in ms (default: {NAVIGATION_TIMEOUT_MS})")
    p.add_argument("--headed", dest="headless", action="store_false", default=None, help="Show the browser window")
    return p.parse_args(argv)


def discover_config_path():
    for search_dir in CONFIG_SEARCH_PATHS:
        candidate = search_dir / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
    return None


def load_config(config_path):
    if config_path is None:
        return {}
    try:
        with open(config_path, "rb") as fh:
            return tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        log(f"Malformed config file {config_path}: {exc}", "ERROR")
        sys.exit(1)
    except OSError as exc:
        log(f"Cannot read config file {config_path}: {exc}", "ERROR")
        sys.exit(1)


def resolve_settings(args, config):
    """Merge CLI args, the config [settings] table and built-in defaults.

    An explicit CLI flag wins over the config file, which wins over the
    defaults.
    """
    settings = config.get("settings", {})
    defaults = {
        "urls": DEFAULT_URL_FILE,
        "blocklist": DEFAULT_BLOCKLIST_FILE,
        "output_dir": DEFAULT_OUTPUT_DIR,
        "device": DEFAULT_DEVICE,
        "browser": DEFAULT_BROWSER,
        "timeout_ms": NAVIGATION_TIMEOUT_MS,
        "headless": True,
    }

    resolved = {}
    for key, default in defaults.items():
        value = getattr(args, key, None)
        if value is None:
            value = settings.get(key, default)
        resolved[key] = value

    if resolved["browser"] not in BROWSERS:
        log(f"Unknown browser '{resolved['browser']}'. Choose one of: {', '.join(BROWSERS)}", "ERROR")
        sys.exit(1)

    return argparse.Namespace(**resolved)


def resolve_device(playwright, name):
    """Look up a device descriptor and return it as new_context() options."""
    try:
        descriptor = playwright.devices[name]
    except KeyError:
        log(f"Unknown device '{name}'.", "ERROR")
        sys.exit(1)

    # default_browser_type describes the descriptor, it is not a context option
    return {k: v for k, v in descriptor.items() if k != "default_browser_type"}


# ================= INPUTS =================

def check_file_validity(file_path):
    try:
        return os.stat(file_path).st_size > 0
    except OSError as exc:
        log(f"Error checking file: {exc}", "ERROR")
        return False


def read_block_list(file_path):
    try:
        with open(file_path, encoding="utf-8") as f:
            data = f.read()
    except (OSError, UnicodeDecodeError) as exc:
        log(f"Error reading blocklist file: {exc}", "ERROR")
        return []

    return [line.strip() for line in data.splitlines() if line.strip()]


def load_urls(file_path):
    """Return the URLs listed in the first row of a CSV file."""
    try:
        df = pd.read_csv(file_path, header=None, nrows=1, dtype=str)
    except (OSError, ValueError) as exc:
        # pandas' EmptyDataError and ParserError are both ValueErrors
        raise ProbeInputError(f"Error parsing CSV {file_path}: {exc}") from exc

    urls = [cell.strip() for cell in df.iloc[0].dropna() if cell.strip()]
    if not urls:
        raise ProbeInputError(f"No URLs found in the first row of {file_path}")
    return urls


# ================= SAMPLER =================

class Sample:
    """Outcome of one sampling call.

    Either three load times in milliseconds, or the error that stopped the
    call. A sample is never partially filled.
    """

    def __init__(self, times=None, error=None):
        self.times = tuple(times) if times is not None else None
        self.error = error

    @classmethod
    def failed(cls, error):
        return cls(error=error or "unknown error")

    @property
    def ok(self):
        return self.times is not None

    def cells(self):
        if self.ok:
            return list(self.times)
        return [NO_RESPONSE] * LOADS_PER_SAMPLE

    def __repr__(self):
        if self.ok:
            return f"Sample(times={self.times!r})"
        return f"Sample(error={self.error!r})"


def is_blocked(request_url, block_prefixes):
    for prefix in block_prefixes:
        prefix = prefix.strip()
        if prefix and request_url.startswith(prefix):
            return True
    return False


def make_route_handler(block_prefixes):
    def handle(route):
        request_url = route.request.url
        if is_blocked(request_url, block_prefixes):
            log(f"Blocked script: {request_url}")
            route.abort()
        else:
            route.continue_()

    return handle


def measure_performance(browser_type, url, block_prefixes=(), device=None,
                        timeout_ms=NAVIGATION_TIMEOUT_MS, headless=True):
    """Load ``url`` LOADS_PER_SAMPLE times in a fresh browser and time each load.

    Each load waits for the ``load`` event and then for network idle. Any
    Playwright error, including a failed browser launch, turns the whole call
    into a failed Sample. The browser is always closed before returning.
    """
    browser = None
    times = []

    try:
        browser = browser_type.launch(headless=headless)
        context = browser.new_context(**device) if device else browser.new_context()
        page = context.new_page()

        if block_prefixes:
            page.route("**/*", make_route_handler(block_prefixes))

        for _ in range(LOADS_PER_SAMPLE):
            start = time.monotonic()
            page.goto(url, wait_until="load", timeout=timeout_ms)
            page.wait_for_load_state("networkidle", timeout=timeout_ms)
            times.append(int((time.monotonic() - start) * 1000))

        return Sample(times)

    except PlaywrightError as exc:
        message = clean_error_message(getattr(exc, "message", exc))
        log(f"Error loading page {url}: {message}", "ERROR")
        return Sample.failed(message)

    finally:
        if browser is not None:
            try:
                browser.close()
            except PlaywrightError as exc:
                log(f"Could not close browser cleanly: {clean_error_message(exc)}", "WARN")


# ================= AGGREGATION =================

def verify_setup(urls, sample):
    log(f"Testing the first URL: {urls[0]} to verify setup.")
    return sample(urls[0]).ok


def collect_results(urls, block_prefixes, mobile_device, sample):
    rows = []

    for url in urls:
        log(f"Testing URL: {url}")

        desktop = sample(url)
        desktop_blocked = sample(url, block_prefixes)
        rows.append({
            "url": url,
            "device_type": "Desktop",
            "unblocked": desktop,
            "blocked": desktop_blocked,
        })

        mobile = sample(url, (), mobile_device)
        mobile_blocked = sample(url, block_prefixes, mobile_device)
        rows.append({
            "url": url,
            "device_type": "Mobile",
            "unblocked": mobile,
            "blocked": mobile_blocked,
        })

    return rows


# ================= REPORT =================

def report_timestamp(now=None):
    now = now or datetime.now(timezone.utc)
    iso = now.strftime("%Y-%m-%dT%H:%M:%S") + f".{now.microsecond // 1000:03d}Z"
    return iso.replace(":", "-").replace(".", "-")


def results_to_frame(rows):
    records = [
        [row["url"], row["device_type"]] + row["unblocked"].cells() + row["blocked"].cells()
        for row in rows
    ]
    return pd.DataFrame(records, columns=[header for header, _ in REPORT_COLUMNS])


def write_report(rows, output_dir):
    """Write rows to a timestamped workbook. Returns the path, or None on failure."""
    df = results_to_frame(rows)
    excel_file = Path(output_dir) / f"performance_results_{report_timestamp()}.xlsx"

    try:
        excel_file.parent.mkdir(parents=True, exist_ok=True)
        with pd.ExcelWriter(excel_file, engine="openpyxl") as writer:
            df.to_excel(writer, sheet_name=SHEET_NAME, index=False)
            sheet = writer.sheets[SHEET_NAME]
            for idx, (_, width) in enumerate(REPORT_COLUMNS, start=1):
                sheet.column_dimensions[get_column_letter(idx)].width = width
    except Exception as exc:
        log(f"Error saving the Excel file: {exc}", "ERROR")
        return None

    log(f"Results successfully saved to {excel_file}")
    return excel_file


# ================= MAIN =================

def main(argv=None):
    args = parse_args(argv)
    config_path = Path(args.config) if args.config else discover_config_path()
    settings = resolve_settings(args, load_config(config_path))

    if not check_file_validity(settings.urls):
        log("Invalid or empty URL file. Exiting.", "ERROR")
        sys.exit(1)

    block_prefixes = read_block_list(settings.blocklist) if check_file_validity(settings.blocklist) else []
    if not block_prefixes:
        log("No scripts to block or blocklist file is empty. Proceeding without blocking.")

    try:
        urls = load_urls(settings.urls)
    except ProbeInputError as exc:
        log(str(exc), "ERROR")
        sys.exit(1)

    with sync_playwright() as p:
        mobile_device = resolve_device(p, settings.device)
        sample = partial(
            measure_performance,
            getattr(p, settings.browser),
            timeout_ms=settings.timeout_ms,
            headless=settings.headless,
        )

        if not verify_setup(urls, sample):
            log("Initial URL test failed. Please check the setup.", "ERROR")
            sys.exit(1)

        rows = collect_results(urls, block_prefixes, mobile_device, sample)

    write_report(rows, settings.output_dir)


if __name__ == "__main__":
    main()
