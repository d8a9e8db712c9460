#!/usr/bin/env python3
"""
Azure Kernel Builder
Automated kernel building with Telegram notifications and GoFile upload
"""

import os
import sys
import json
import subprocess
import threading
import time
import re
import html
import hashlib
import argparse
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, List, Mapping, Sequence, Tuple, IO
import requests

# Constants
KERNEL_NAME = "Azure"
BUILDER_VERSION = "2.0"
SCRIPT_DIR = Path(__file__).parent.resolve()

TOOLCHAIN_REMOTE = "https://github.com/naifiprjkt/toolchains.git"
ANYKERNEL_REMOTE = "https://github.com/naifiprjkt/AnyKernel3.git"
ANYKERNEL_BRANCH = "a22x"
KERNELSU_SETUP_URL = "https://raw.githubusercontent.com/KernelSU-Next/KernelSU-Next/next/kernel/setup.sh"
KERNELSU_BRANCH = "next"

REQUIRED_COMMANDS = ("git", "curl", "make", "zip", "strings", "bc")
GOFILE_SERVERS = ("store1", "store2", "store3", "store4")

# (name, branch) pairs, all cloned from TOOLCHAIN_REMOTE into toolchain/<name>
TOOLCHAINS = (
    ("clang", "clang-12"),
    ("gcc", "androidcc-4.9"),
    ("arm-gnu", "arm-gnu"),
)
CLANG_TRIPLE = "aarch64-linux-gnu-"
CROSS_COMPILE_PREFIX = "aarch64-linux-android-"
CROSS_COMPILE_COMPAT_PREFIX = "arm-linux-gnueabi-"

UNKNOWN_VERSION = "Unknown"
ERROR_LINES = 20
# Telegram rejects captions longer than 1024 characters
CAPTION_LIMIT = 1024
EXCERPT_LIMIT = 700
REASON_LIMIT = 150
FIELD_LIMIT = 100
MISSING_LOG_TEXT = "No build.log generated, possibly error before compilation.\n"

ERROR_PATTERN = re.compile(r"error", re.IGNORECASE)
LINUX_VERSION_PATTERN = re.compile(rb"[\x20-\x7e]*Linux version [\x20-\x7e]*")
DOWNLOAD_PAGE_PATTERN = re.compile(r'"downloadPage"\s*:\s*"([^"]+)"')
HTML_TAG_PATTERN = re.compile(r"<[^>]+>")

DEVICE_CONFIG_KEYS = ("device", "defconfig", "arch", "build_user", "build_host")


# ANSI color codes
class Colors:
    RED = '\033[0;31m'
    GREEN = '\033[0;32m'
    YELLOW = '\033[1;33m'
    BLUE = '\033[0;34m'
    CYAN = '\033[0;36m'
    NC = '\033[0m'  # No Color

def print_status(msg: str):
    """Print info message"""
    print(f"{Colors.CYAN}[INFO]{Colors.NC} {msg}")

def print_success(msg: str):
    """Print success message"""
    print(f"{Colors.GREEN}[SUCCESS]{Colors.NC} {msg}")

def print_warning(msg: str):
    """Print warning message"""
    print(f"{Colors.YELLOW}[WARNING]{Colors.NC} {msg}")

def print_error(msg: str):
    """Print error message"""
    print(f"{Colors.RED}[ERROR]{Colors.NC} {msg}")


class BuildError(RuntimeError):
    """Fatal pipeline failure, carries the process exit code"""

    exit_code = 1

    def __init__(self, message: str, exit_code: Optional[int] = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class MissingDependencyError(BuildError):
    """Required executables are not on PATH"""

    def __init__(self, missing: Sequence[str]):
        super().__init__(f"Missing dependencies: {' '.join(missing)}")
        self.missing = list(missing)


class KernelSUSetupError(BuildError):
    pass


class ToolchainError(BuildError):
    pass


class KernelBuildError(BuildError):
    pass


class ArtifactMissingError(BuildError):
    pass


class PackagingError(BuildError):
    pass


@dataclass(frozen=True)
class Toolchain:
    name: str
    branch: str
    path: Path

    @property
    def bin_dir(self) -> Path:
        return self.path / "bin"


@dataclass(frozen=True)
class BuildConfig:
    """Immutable build configuration, created once per run"""

    src_dir: Path
    timestamp: str
    device: str = "A226B"
    defconfig: str = "azure_defconfig"
    arch: str = "arm64"
    build_user: str = "azure"
    build_host: str = "naifiprjkt"
    use_ccache: bool = True
    toolchain_remote: str = TOOLCHAIN_REMOTE
    anykernel_remote: str = ANYKERNEL_REMOTE
    anykernel_branch: str = ANYKERNEL_BRANCH
    required_commands: Tuple[str, ...] = REQUIRED_COMMANDS
    upload_servers: Tuple[str, ...] = GOFILE_SERVERS
    clone_timeout: int = 1800
    upload_timeout: int = 3600
    request_timeout: int = 30

    @classmethod
    def create(cls, src_dir: Path, device_or_path: Optional[str] = None,
               now: Optional[datetime] = None,
               env: Optional[Mapping[str, str]] = None) -> "BuildConfig":
        """Build the run configuration from defaults, an optional device JSON and the environment"""
        overrides = load_device_config(device_or_path) if device_or_path else {}
        env = os.environ if env is None else env
        stamp = (now or datetime.now()).strftime("%Y%m%d%H%M")
        return cls(
            src_dir=Path(src_dir).resolve(),
            timestamp=stamp,
            use_ccache=env.get("USE_CCACHE", "1") != "0",
            **overrides
        )

    @property
    def out_dir(self) -> Path:
        return self.src_dir / "out"

    @property
    def result_dir(self) -> Path:
        return self.src_dir / "result"

    @property
    def toolchain_dir(self) -> Path:
        return self.src_dir / "toolchain"

    @property
    def toolchains(self) -> Tuple[Toolchain, ...]:
        return tuple(Toolchain(name, branch, self.toolchain_dir / name) for name, branch in TOOLCHAINS)

    @property
    def anykernel_dir(self) -> Path:
        return self.src_dir / "AnyKernel3"

    @property
    def boot_dir(self) -> Path:
        return self.out_dir / "arch" / self.arch / "boot"

    @property
    def kernel_image(self) -> Path:
        return self.boot_dir / "Image.gz"

    @property
    def raw_image(self) -> Path:
        return self.boot_dir / "Image"

    @property
    def log_file(self) -> Path:
        return self.out_dir / "build.log"

    @property
    def kernel_zip(self) -> str:
        return f"{self.device}-KSU-{self.timestamp}.zip"


def load_device_config(device_or_path: str) -> Dict[str, str]:
    """Load device overrides from a codename (devices/<name>.json) or a JSON path"""
    config_path = Path(device_or_path)
    if not config_path.exists():
        config_path = SCRIPT_DIR / "devices" / f"{device_or_path}.json"

    if not config_path.exists():
        raise FileNotFoundError(f"Device config not found: {device_or_path}")

    print_status(f"Loading device configuration from {config_path}")

    with open(config_path, 'r') as f:
        data = json.load(f)

    if not isinstance(data, dict):
        raise ValueError(f"Device config must be a JSON object: {config_path}")
    for field in ("device", "defconfig"):
        if field not in data:
            raise ValueError(f"Missing required field in config: {field}")
    unknown = sorted(set(data) - set(DEVICE_CONFIG_KEYS))
    if unknown:
        raise ValueError(f"Unknown fields in config: {', '.join(unknown)}")
    for key, value in data.items():
        if not isinstance(value, str) or not value:
            raise ValueError(f"Config field {key} must be a non-empty string")

    return data


def find_missing_commands(commands: Sequence[str]) -> List[str]:
    """Return the commands that cannot be resolved on PATH, in input order"""
    return [cmd for cmd in commands if shutil.which(cmd) is None]


def shallow_clone(url: str, branch: str, dest: Path, timeout: Optional[int] = None):
    """Depth-1 clone of a single branch; a partial checkout is removed on failure"""
    try:
        subprocess.run(
            ["git", "clone", "--depth=1", url, "-b", branch, str(dest), "-q"],
            check=True,
            capture_output=True,
            text=True,
            timeout=timeout
        )
    except (subprocess.SubprocessError, OSError):
        if dest.exists():
            shutil.rmtree(dest, ignore_errors=True)
        raise


def describe_failure(exc: Exception) -> str:
    stderr = getattr(exc, "stderr", None)
    if isinstance(stderr, bytes):
        stderr = stderr.decode(errors="replace")
    if stderr and stderr.strip():
        return f"{exc}: {stderr.strip()}"
    return str(exc)


def build_environment(config: BuildConfig, base_env: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Compiler environment for the kernel build, derived without touching os.environ"""
    env = dict(os.environ if base_env is None else base_env)
    clang, gcc, arm_gnu = config.toolchains

    search_path = [str(clang.bin_dir), str(gcc.bin_dir), str(arm_gnu.bin_dir)]
    if env.get("PATH"):
        search_path.append(env["PATH"])
    env["PATH"] = os.pathsep.join(search_path)

    cc = str(clang.bin_dir / "clang")
    if config.use_ccache and shutil.which("ccache", path=env["PATH"]):
        cc = f"ccache {cc}"

    env.update({
        "CC": cc,
        "CLANG_TRIPLE": CLANG_TRIPLE,
        "CROSS_COMPILE": str(gcc.bin_dir / CROSS_COMPILE_PREFIX),
        "CROSS_COMPILE_COMPAT": str(arm_gnu.bin_dir / CROSS_COMPILE_COMPAT_PREFIX),
        "KBUILD_BUILD_USER": config.build_user,
        "KBUILD_BUILD_HOST": config.build_host,
        "USE_CCACHE": "1" if config.use_ccache else "0",
    })
    return env


class BuildLogTee:
    """Background thread that copies a child's output to the console and the build log"""

    def __init__(self, stream: IO[str], log_file: Path, echo: bool = True):
        self.stream = stream
        self.log_file = log_file
        self.echo = echo
        self.thread: Optional[threading.Thread] = None

    def start(self):
        """Start copying in background thread"""
        self.thread = threading.Thread(target=self._copy_loop, daemon=True)
        self.thread.start()

    def join(self, timeout: Optional[float] = None):
        """Wait for the stream to drain"""
        if self.thread:
            self.thread.join(timeout=timeout)

    def _copy_loop(self):
        with self.stream, open(self.log_file, 'a', encoding='utf-8', errors='replace') as log:
            for line in self.stream:
                log.write(line)
                log.flush()
                if self.echo:
                    sys.stdout.write(line)
                    sys.stdout.flush()


def run_logged(cmd: Sequence[str], log_file: Path, cwd: Optional[Path] = None,
               env: Optional[Mapping[str, str]] = None) -> int:
    """Run a command, tee its combined output into log_file and return its own exit status"""
    process = subprocess.Popen(
        list(cmd),
        cwd=cwd,
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        errors='replace',
        bufsize=1
    )
    tee = BuildLogTee(process.stdout, log_file)
    tee.start()

    try:
        return_code = process.wait()
    except KeyboardInterrupt:
        print_warning(f"Interrupted, stopping {cmd[0]}...")
        process.terminate()
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
        tee.join(timeout=5)
        raise

    tee.join()
    return return_code


def extract_kernel_version(image_path: Path) -> str:
    """Return the first printable string containing "Linux version" in a raw kernel image"""
    if not image_path.is_file():
        return UNKNOWN_VERSION
    match = LINUX_VERSION_PATTERN.search(image_path.read_bytes())
    if not match:
        return UNKNOWN_VERSION
    return match.group(0).decode('ascii').strip() or UNKNOWN_VERSION


def extract_error_excerpt(log_file: Path, max_lines: int = ERROR_LINES,
                          max_chars: int = EXCERPT_LIMIT) -> str:
    """
    Collect the most recent error lines of a build log.

    Lines matching "error" case-insensitively are kept in their original
    order. Only the last max_lines survive, and older lines are dropped
    until the excerpt fits in max_chars. A single oversized line keeps
    its tail.
    """
    try:
        with open(log_file, 'r', encoding='utf-8', errors='replace') as log:
            matches = [line.rstrip("\n") for line in log if ERROR_PATTERN.search(line)]
    except OSError:
        return ""

    lines = matches[-max_lines:] if max_lines > 0 else []
    while len(lines) > 1 and len("\n".join(lines)) > max_chars:
        lines.pop(0)
    excerpt = "\n".join(lines)
    return excerpt[-max_chars:] if len(excerpt) > max_chars else excerpt


def extract_download_link(body: str) -> Optional[str]:
    """Pull the downloadPage field out of a GoFile upload response"""
    try:
        payload = json.loads(body)
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        data = payload.get("data")
        if isinstance(data, dict):
            link = data.get("downloadPage")
            if isinstance(link, str) and link:
                return link

    match = DOWNLOAD_PAGE_PATTERN.search(body or "")
    return match.group(1) if match else None


def clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit - 3] + "..."


def caption_length(caption: str) -> int:
    """Length of an HTML caption as Telegram counts it: tags removed, entities decoded"""
    return len(html.unescape(HTML_TAG_PATTERN.sub("", caption)))


def archive_entries(directory: Path) -> List[str]:
    """Top-level template entries to zip: hidden files, VCS metadata and READMEs are left out"""
    return [
        entry.name for entry in sorted(directory.iterdir())
        if not entry.name.startswith(".") and not entry.name.startswith("README")
    ]


def calculate_sha256(file_path: Path) -> str:
    """Calculate SHA256 checksum of file"""
    sha256 = hashlib.sha256()
    with open(file_path, 'rb') as f:
        for chunk in iter(lambda: f.read(8192), b''):
            sha256.update(chunk)
    return sha256.hexdigest()


class TelegramNotifier:
    """Handles Telegram API communication for build notifications"""

    def __init__(self, bot_token: str, chat_id: str, config: BuildConfig):
        self.base_url = f"https://api.telegram.org/bot{bot_token}"
        self.chat_id = chat_id
        self.config = config
        self.timeout = config.request_timeout

    def send_message(self, text: str) -> bool:
        """Send an HTML text message"""
        try:
            response = requests.post(
                f"{self.base_url}/sendMessage",
                data={
                    "chat_id": self.chat_id,
                    "text": text,
                    "parse_mode": "HTML",
                    "disable_web_page_preview": "false"
                },
                timeout=self.timeout
            )
            payload = response.json() if response.ok else None
            if isinstance(payload, dict) and payload.get("ok"):
                return True
            print_warning(f"Telegram API error: {response.text}")
        except (requests.RequestException, ValueError) as e:
            print_warning(f"Failed to send Telegram message: {e}")
        return False

    def send_document(self, file_path: Path, caption: str = "") -> bool:
        """Send document file to Telegram"""
        try:
            with open(file_path, 'rb') as f:
                return self._post_document(f, caption)
        except OSError as e:
            print_warning(f"Failed to read {file_path}: {e}")
        return False

    def _post_document(self, document, caption: str) -> bool:
        try:
            response = requests.post(
                f"{self.base_url}/sendDocument",
                data={
                    "chat_id": self.chat_id,
                    "caption": caption,
                    "parse_mode": "HTML"
                },
                files={"document": document},
                timeout=self.timeout
            )
            if response.ok:
                return True
            print_warning(f"Failed to send document: {response.text}")
        except requests.RequestException as e:
            print_warning(f"Failed to send document to Telegram: {e}")
        return False

    def build_failure_caption(self, reason: str, excerpt: str) -> str:
        """
        Caption for the failure log.

        Older excerpt lines are dropped until the visible text fits
        Telegram's caption limit.
        """
        lines = excerpt.splitlines()
        while True:
            caption = self._render_failure_caption(reason, "\n".join(lines))
            overflow = caption_length(caption) - CAPTION_LIMIT
            if overflow <= 0 or not lines:
                return caption
            if len(lines) > 1:
                lines.pop(0)
            elif len(lines[0]) > overflow:
                lines[0] = lines[0][overflow:]
            else:
                lines = []

    def _render_failure_caption(self, reason: str, excerpt: str) -> str:
        errors = html.escape(excerpt) if excerpt else "No errors found in log"

        return f"""<b>Build Failed!</b>

<b>Device:</b> <code>{html.escape(clip(self.config.device, FIELD_LIMIT))}</code>
<b>Config:</b> <code>{html.escape(clip(self.config.defconfig, FIELD_LIMIT))}</code>
<b>Date:</b> <code>{self.config.timestamp}</code>
<b>Reason:</b> {html.escape(clip(reason, REASON_LIMIT))}

<b>Last {ERROR_LINES} errors:</b>
<pre>{errors}</pre>"""

    def build_success_message(self, version: str, download_link: Optional[str]) -> str:
        message = f"""<b>Kernel Build Successful!</b>

<b>Device:</b> <code>{html.escape(self.config.device)}</code>
<b>Kernel:</b> <code>{html.escape(self.config.kernel_zip)}</code>
<b>Date:</b> <code>{self.config.timestamp}</code>

<b>Version:</b>
<code>{html.escape(version)}</code>"""

        if download_link:
            message += f"\n\n<b>Download Link:</b>\n{html.escape(download_link)}"

        message += "\n\n<b>Note:</b> Always backup your boot before flashing!"
        return message

    def notify_failure(self, log_file: Path, reason: str) -> bool:
        """Post the failure caption with the build log attached"""
        caption = self.build_failure_caption(reason, extract_error_excerpt(log_file))
        if log_file.is_file():
            return self.send_document(log_file, caption)

        print_warning("build.log not found, attaching minimal log...")
        return self._post_document((log_file.name, MISSING_LOG_TEXT.encode()), caption)

    def notify_success(self, version: str, download_link: Optional[str]) -> bool:
        return self.send_message(self.build_success_message(version, download_link))


class GoFileUploader:
    """Uploads a file to GoFile, trying each mirror in order until one returns a link"""

    def __init__(self, servers: Sequence[str] = GOFILE_SERVERS, timeout: int = 3600):
        self.servers = tuple(servers)
        self.timeout = timeout

    @staticmethod
    def upload_url(server: str) -> str:
        return f"https://{server}.gofile.io/contents/uploadfile"

    def upload(self, file_path: Path) -> Optional[str]:
        """Return the download page of the first successful upload, or None"""
        for i, server in enumerate(self.servers):
            print_status(f"Trying {server}.gofile.io ({i+1}/{len(self.servers)})...")
            try:
                with open(file_path, 'rb') as f:
                    response = requests.post(
                        self.upload_url(server),
                        files={"file": f},
                        timeout=self.timeout
                    )
            except (requests.RequestException, OSError) as e:
                print_warning(f"Failed to upload to {server}: {e}")
                continue

            link = extract_download_link(response.text)
            if link:
                print_success(f"Upload successful to {server}!")
                return link
            print_warning(f"Server {server} returned no download link (HTTP {response.status_code})")

        print_warning("Upload failed! All GoFile servers unavailable")
        return None


class BuildOrchestrator:
    """Main build workflow coordinator"""

    def __init__(self, config: BuildConfig, notifier: Optional[TelegramNotifier],
                 uploader: Optional[GoFileUploader] = None):
        self.config = config
        self.notifier = notifier
        self.uploader = uploader or GoFileUploader(config.upload_servers, config.upload_timeout)
        self.start_time = time.time()
        self.build_env: Optional[Dict[str, str]] = None
        self.kernel_version = UNKNOWN_VERSION
        self.output_file: Optional[Path] = None
        self.download_link: Optional[str] = None
        self._template_used = False
        self._failure_reported = False

    def run(self, skip_kernelsu: bool = False, skip_upload: bool = False) -> int:
        """Main build pipeline, returns the process exit code"""
        try:
            self.check_dependencies()
            if skip_kernelsu:
                print_status("KernelSU setup skipped")
            else:
                self.setup_kernelsu()
            self.setup_toolchains()
            self.clean_workspace()
            self.build_kernel()
            self.verify_build()
            self.kernel_version = self.get_kernel_version()
            self.package_kernel()

            try:
                if skip_upload:
                    print_status("Upload skipped")
                else:
                    self.download_link = self.upload()
                self.send_success_notification()
            finally:
                self.cleanup()

            self._show_summary()
            return 0

        except BuildError as e:
            print_error(str(e))
            self.send_error_log(str(e))
            self._cleanup_after_failure()
            return e.exit_code
        except KeyboardInterrupt:
            print()
            print_error("Build interrupted by user")
            self.send_error_log("Build interrupted by user")
            self._cleanup_after_failure()
            return 130
        except Exception as e:
            print_error(f"Build failed: {e}")
            self.send_error_log(str(e))
            self._cleanup_after_failure()
            raise

    def check_dependencies(self):
        """Check if required commands are available"""
        print_status("Checking required dependencies...")
        missing = find_missing_commands(self.config.required_commands)
        if missing:
            raise MissingDependencyError(missing)
        print_success("All dependencies found!")

    def setup_kernelsu(self):
        """Fetch the KernelSU-Next setup script and run it in the source tree"""
        print_status("Setting up KernelSU...")
        try:
            response = requests.get(KERNELSU_SETUP_URL, timeout=self.config.request_timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise KernelSUSetupError(f"Failed to download KernelSU setup script: {e}") from e

        print_status(f"Setup script SHA256: {hashlib.sha256(response.content).hexdigest()}")

        try:
            subprocess.run(
                ["bash", "-s", KERNELSU_BRANCH],
                input=response.text,
                text=True,
                cwd=self.config.src_dir,
                check=True,
                timeout=self.config.clone_timeout
            )
        except (subprocess.SubprocessError, OSError) as e:
            raise KernelSUSetupError(f"KernelSU setup failed: {e}") from e

        print_success("KernelSU setup complete!")

    def setup_toolchains(self) -> Dict[str, str]:
        """Clone missing toolchains and derive the compiler environment"""
        print_status("Setting up toolchains...")
        cloned = 0

        for toolchain in self.config.toolchains:
            if toolchain.path.is_dir():
                continue
            print_status(f"Downloading {toolchain.name} ({toolchain.branch})...")
            toolchain.path.parent.mkdir(parents=True, exist_ok=True)
            try:
                shallow_clone(self.config.toolchain_remote, toolchain.branch, toolchain.path,
                              timeout=self.config.clone_timeout)
            except (subprocess.SubprocessError, OSError) as e:
                raise ToolchainError(f"Failed to clone {toolchain.name} toolchain: {describe_failure(e)}") from e
            cloned += 1

        self.build_env = build_environment(self.config)
        print_success(f"Toolchains ready! ({cloned} downloaded)")
        return self.build_env

    def clean_workspace(self):
        """Recreate out/ and drop stale archives from result/"""
        print_status("Cleaning previous build...")
        if self.config.out_dir.exists():
            shutil.rmtree(self.config.out_dir)
        self.config.out_dir.mkdir(parents=True)

        self.config.result_dir.mkdir(parents=True, exist_ok=True)
        for stale in self.config.result_dir.glob("*.zip"):
            stale.unlink()
        print_success("Clean complete!")

    def build_kernel(self):
        """Generate the defconfig, then compile, logging both to out/build.log"""
        config = self.config
        cores = os.cpu_count() or 1
        env = self.build_env or build_environment(config)

        print_status(f"Building kernel for {config.device}...")
        print_status(f"Config: {config.defconfig}")
        print_status(f"Threads: {cores}")

        config.out_dir.mkdir(parents=True, exist_ok=True)
        config.log_file.write_text("")

        return_code = self._run_make([
            "make",
            f"O={config.out_dir}",
            f"ARCH={config.arch}",
            config.defconfig,
            f"-j{cores}",
        ], env)
        if return_code != 0:
            raise KernelBuildError("Failed to generate defconfig!", exit_code=return_code)
        if not (config.out_dir / ".config").is_file():
            raise KernelBuildError(f"{config.defconfig} did not produce {config.out_dir / '.config'}")

        return_code = self._run_make([
            "make",
            f"-j{cores}",
            f"O={config.out_dir}",
            f"ARCH={config.arch}",
            f"CC={env['CC']}",
            f"CLANG_TRIPLE={env['CLANG_TRIPLE']}",
            f"CROSS_COMPILE={env['CROSS_COMPILE']}",
            f"CROSS_COMPILE_COMPAT={env['CROSS_COMPILE_COMPAT']}",
        ], env)
        if return_code != 0:
            raise KernelBuildError("Kernel compilation failed!", exit_code=return_code)

        print_success("Kernel compiled successfully!")

    def _run_make(self, cmd: List[str], env: Mapping[str, str]) -> int:
        try:
            return run_logged(cmd, self.config.log_file, cwd=self.config.src_dir, env=env)
        except OSError as e:
            raise KernelBuildError(f"Failed to start make: {e}") from e

    def verify_build(self):
        """Check that the compressed kernel image exists"""
        print_status("Verifying kernel image...")
        image = self.config.kernel_image
        if not image.is_file():
            print_error(f"{image.name} not found!")
            self._list_boot_dir()
            raise ArtifactMissingError(f"Kernel image not found: {image}")

        size_mb = image.stat().st_size / (1024 * 1024)
        print_success(f"Kernel image verified! ({image.name}, {size_mb:.2f} MB)")

    def _list_boot_dir(self):
        boot_dir = self.config.boot_dir
        if not boot_dir.is_dir():
            print_warning(f"{boot_dir} does not exist")
            return
        print(f"Contents of {boot_dir}:")
        for entry in sorted(boot_dir.iterdir()):
            try:
                size = entry.lstat().st_size
            except OSError:
                size = 0
            print(f"  {entry.name:<30} {size:>12}")

    def get_kernel_version(self) -> str:
        """Extract the kernel version string, never fatal"""
        print_status("Extracting kernel version...")
        if not self.config.raw_image.is_file():
            print_warning("Kernel image missing, cannot extract version")
            return UNKNOWN_VERSION

        version = extract_kernel_version(self.config.raw_image)
        if version == UNKNOWN_VERSION:
            print_warning("Kernel version string not found in Image, marking as Unknown")
        else:
            print(f"Version: {version}")
        return version

    def package_kernel(self) -> Path:
        """Zip the kernel image into the AnyKernel3 template and move it to result/"""
        config = self.config
        print_status("Packaging kernel...")
        self._template_used = True

        ak_dir = config.anykernel_dir
        if not ak_dir.is_dir():
            print_status("Cloning AnyKernel3...")
            try:
                shallow_clone(config.anykernel_remote, config.anykernel_branch, ak_dir,
                              timeout=config.clone_timeout)
            except (subprocess.SubprocessError, OSError) as e:
                raise PackagingError(f"Failed to clone AnyKernel3: {describe_failure(e)}") from e

        archive = ak_dir / config.kernel_zip
        try:
            shutil.copy2(config.kernel_image, ak_dir / config.kernel_image.name)
            if archive.exists():
                archive.unlink()
            subprocess.run(
                ["zip", "-r9", "-q", config.kernel_zip, *archive_entries(ak_dir),
                 "-x", "*.git*", "README*"],
                cwd=ak_dir,
                check=True,
                capture_output=True,
                text=True
            )
            config.result_dir.mkdir(parents=True, exist_ok=True)
            destination = config.result_dir / config.kernel_zip
            shutil.move(str(archive), str(destination))
        except (subprocess.SubprocessError, OSError) as e:
            raise PackagingError(f"Failed to create {config.kernel_zip}: {describe_failure(e)}") from e

        self.output_file = destination
        print_success(f"Kernel packaged: {config.kernel_zip}")
        return destination

    def upload(self) -> Optional[str]:
        """Upload the archive to GoFile, never fatal"""
        if not self.output_file:
            print_warning("No output file to upload")
            return None
        print_status("Uploading to GoFile...")
        return self.uploader.upload(self.output_file)

    def send_success_notification(self):
        print_status("Sending notification to Telegram...")
        if not self.notifier:
            print_warning("Telegram credentials not set, skipping...")
            return
        if not self.download_link:
            print_warning("No download link available")

        if self.notifier.notify_success(self.kernel_version, self.download_link):
            print_success("Telegram notification sent!")
        else:
            print_warning("Failed to send Telegram notification")

    def send_error_log(self, reason: str):
        """Send the failure report once per run"""
        if self._failure_reported:
            return
        self._failure_reported = True

        print_error("Sending error logs to Telegram...")
        if not self.notifier:
            print_warning("Telegram credentials not set, skipping...")
            return

        if self.notifier.notify_failure(self.config.log_file, reason):
            print_success("Error log sent to Telegram!")
        else:
            print_warning("Failed to send log to Telegram")

    def cleanup(self):
        """Remove the AnyKernel3 checkout"""
        print_status("Cleaning up...")
        if self.config.anykernel_dir.exists():
            shutil.rmtree(self.config.anykernel_dir)
        print_success("Cleanup complete!")

    def _cleanup_after_failure(self):
        if not self._template_used:
            return
        try:
            self.cleanup()
        except OSError as e:
            print_warning(f"Failed to clean up {self.config.anykernel_dir}: {e}")

    def _show_summary(self):
        """Display build summary"""
        build_time = int(time.time() - self.start_time)
        minutes, seconds = divmod(build_time, 60)

        print()
        print("========================================")
        print_success("Build completed successfully!")
        print("========================================")
        print(f"Time: {minutes}m {seconds}s")
        if self.output_file:
            size_mb = self.output_file.stat().st_size / (1024 * 1024)
            print(f"Output: {self.output_file} ({size_mb:.2f} MB)")
            print(f"SHA256: {calculate_sha256(self.output_file)}")
        print(f"Version: {self.kernel_version}")
        if self.download_link:
            print(f"Link: {self.download_link}")
        print()


def get_telegram_credentials(env: Optional[Mapping[str, str]] = None) -> Tuple[Optional[str], Optional[str]]:
    """Read Telegram credentials from the environment; both must be set"""
    env = os.environ if env is None else env
    token = env.get("BOT_TOKEN")
    chat_id = env.get("CHAT_ID")
    if not token or not chat_id:
        return None, None
    return token, chat_id


def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description=f"{KERNEL_NAME} Kernel Builder with Telegram notifications and GoFile upload"
    )
    parser.add_argument("--device",
                       help="Device codename or path to JSON config (default: built-in A226B)")
    parser.add_argument("--src-dir", type=Path, default=Path.cwd(),
                       help="Kernel source directory (default: current directory)")
    parser.add_argument("--skip-kernelsu", action="store_true",
                       help="Skip KernelSU-Next setup")
    parser.add_argument("--skip-upload", action="store_true",
                       help="Skip GoFile upload")
    parser.add_argument("--no-notify", action="store_true",
                       help="Disable Telegram notifications")

    args = parser.parse_args()

    try:
        config = BuildConfig.create(args.src_dir, args.device)
    except (OSError, ValueError, TypeError) as e:
        print_error(f"Failed to load device config: {e}")
        sys.exit(1)

    # Display header
    print("========================================")
    print(f"   {KERNEL_NAME} Kernel Builder v{BUILDER_VERSION}")
    print(f"   Device: {config.device}")
    print("========================================")
    print(f"Build started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print()
    print("Build Configuration:")
    print(f"  Defconfig: {config.defconfig}")
    print(f"  Arch: {config.arch}")
    print(f"  Source: {config.src_dir}")
    print(f"  Archive: {config.kernel_zip}")
    print(f"  ccache: {config.use_ccache}")
    print()

    notifier = None
    if not args.no_notify:
        bot_token, chat_id = get_telegram_credentials()
        if bot_token and chat_id:
            notifier = TelegramNotifier(bot_token, chat_id, config)
    if notifier:
        print_status("Telegram notifications enabled")
    else:
        print_status("Telegram notifications disabled for this build")

    orchestrator = BuildOrchestrator(config, notifier)
    sys.exit(orchestrator.run(
        skip_kernelsu=args.skip_kernelsu,
        skip_upload=args.skip_upload
    ))


if __name__ == "__main__":
    main()
