#!/usr/bin/env python3
"""buildemacs.py - builds emacs from source

features:

- Single script which installs build dependencies, fetches, configures,
  builds and installs emacs from its git repository
- Each build step can be run, skipped or confirmed interactively
- Default configure options can be overridden or negated from the commandline
- Patches the installed desktop entry (icon, xwidgets crash workaround)

class structure:

ConfigureOption
Step
StepSelection
ShellCmd
    PlatformInfo
    SudoKeepAlive
    EmacsBuilder
Pipeline

"""

import argparse
import datetime
import enum
import logging
import os
import platform
import shlex
import subprocess
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence, Union
from urllib.request import urlretrieve

__version__ = "0.1.0"

# ----------------------------------------------------------------------------
# type aliases

Pathlike = Union[str, Path]
ActionFn = Callable[[], None]
PromptFn = Callable[[str], str]


# ----------------------------------------------------------------------------
# env helpers


def getenv(key: str, default: bool = False) -> bool:
    """convert '0','1','true','yes' env values to bool {True, False}"""
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def setenv(key: str, default: str) -> str:
    """get environ variable if it is exists else set default"""
    if key in os.environ:
        return os.getenv(key, default) or default
    else:
        os.environ[key] = default
        return default


# ----------------------------------------------------------------------------
# constants

PLATFORM = platform.system()
ARCH = platform.machine()

EMACS_DIRECTORY = Path.home() / "emacs"
EMACS_REMOTE_URL = "https://git.savannah.gnu.org/git/emacs.git"

WEBKIT_PACKAGE = "libwebkit2gtk-4.1-0"
WEBKIT_REQUIRED = "2.12"
WEBKIT_BROKEN = "2.41.92"

DESKTOP_FILE = Path("/usr/local/share/applications/emacs.desktop")
ICON_DIR = Path.home() / ".local" / "share" / "icons" / "hicolor" / "256x256" / "apps"
# Spacemacs logo by Nasser Alshammari is licensed under a Creative Commons
# Attribution-ShareAlike 4.0 International License.
ICON_URL = (
    "https://raw.githubusercontent.com/nashamri/spacemacs-logo/master/spacemacs-logo.svg"
)

SUDO_REFRESH_INTERVAL = 60.0

DEFAULT_CONFIGURE_OPTIONS: tuple[str, ...] = (
    "--with-pgtk",
    "--with-native-compilation=aot",
    "--without-compress-install",
    "--with-tree-sitter",
    "--with-mailutils",
)

XWIDGETS_OPTION = "--with-xwidgets"
PGTK_OPTION = "--with-pgtk"
XWAYLAND_TOOLKIT_OPTION = "--with-x-toolkit=gtk3"

BUILD_DEPENDENCIES: tuple[str, ...] = (
    "build-essential", "autoconf", "make", "gcc", "libgnutls28-dev",
    "libgccjit-11-dev", "libgccjit-12-dev", "libtiff5-dev", "libgif-dev",
    "libjpeg-dev", "libpng-dev", "libxpm-dev", "libncurses-dev", "texinfo",
    "libgccjit0", "libgccjit-10-dev", "gcc-10", "g++-10", "sqlite3",
    "libconfig-dev", "libgtk-3-dev", "gnutls-bin", "libacl1-dev", "libotf-dev",
    "libxft-dev", "libsystemd-dev", "libncurses5-dev", "libharfbuzz-dev",
    "imagemagick", "libmagickwand-dev", "xaw3dg-dev", "libx11-dev",
    "libtree-sitter-dev", "automake", "bsd-mailx", "dbus-x11", "debhelper",
    "dpkg-dev", "libasound2-dev", "libdbus-1-dev", "libgpm-dev", "liblcms2-dev",
    "liblockfile-dev", "libm17n-dev", "liboss4-salsa2", "librsvg2-dev",
    "libselinux1-dev", "libtiff-dev", "libxml2-dev", "libxt-dev", "procps",
    "quilt", "sharutils", "zlib1g-dev", "gvfs", "libasound2", "libaspell15",
    "libasyncns0", "libatk-bridge2.0-0", "libatk1.0-0", "libatspi2.0-0",
    "libbrotli1", "libc6", "libc6-dev", "libcairo-gobject2", "libcairo2",
    "libcanberra-gtk3-0", "libcanberra-gtk3-module", "libcanberra0",
    "libdatrie1", "libdb5.3", "libdrm2", "libegl1", "libepoxy0", "libflac8",
    "libfontconfig1", "libfreetype6", "libgbm1", "libgcc-s1",
    "libgdk-pixbuf2.0-0", "libgif7", "libgl1", "libglvnd0", "libglx0",
    "libgpm2", "libgraphite2-3", "libgstreamer-gl1.0-0",
    "libgstreamer-plugins-base1.0-0", "libgstreamer1.0-0", "libgtk-3-0",
    "libgudev-1.0-0", "libharfbuzz-icu0", "libharfbuzz0b", "libhyphen0",
    "libice6", "libjbig0", "libjpeg-turbo8", "liblcms2-2", "liblockfile1",
    "libltdl7", "libm17n-0", "libmpc3", "libmpfr6", "libnotify4",
    "libnss-mdns", "libnss-myhostname", "libnss-systemd", "libogg0",
    "liborc-0.4-0", "libpango-1.0-0", "libpangocairo-1.0-0",
    "libpangoft2-1.0-0", "libpixman-1-0", "libpng16-16", "libpulse0",
    "librsvg2-2", "libsasl2-2", "libsecret-1-0", "libsm6", "libsndfile1",
    "libsoup2.4-1", "libstdc++6", "libtdb1", "libthai0", "libtiff5",
    "libvorbis0a", "libvorbisenc2", "libvorbisfile3", "libwayland-client0",
    "libwayland-cursor0", "libwayland-egl1", "libwayland-server0",
    "libwebpdemux2", "libwoff1", "libx11-6", "libx11-xcb1", "libxau6",
    "libxcb-render0", "libxcb-shm0", "libxcb1", "heif-gdk-pixbuf",
    "libxcomposite1", "libxcursor1", "libxdamage1", "gawk", "ibus-gtk3",
    "libibus-1.0-5", "libxdmcp6", "libxext6", "libxfixes3", "libxi6",
    "libxinerama1", "libxkbcommon0", "libxml2", "libxpm4", "libxrandr2",
    "libxrender1", "libxslt1.1", "libyajl2", "clang", "libclang-dev",
)

# ----------------------------------------------------------------------------
# envar options

VERBOSE = getenv("VERBOSE", default=False)
COLOR = getenv("COLOR", default=True)
SKIP_PROMPT = setenv("SKIP_PROMPT", "yes")


# ----------------------------------------------------------------------------
# logging config


class CustomFormatter(logging.Formatter):
    """custom logging formatting class"""

    white = "\x1b[97;20m"
    grey = "\x1b[38;20m"
    green = "\x1b[32;20m"
    yellow = "\x1b[33;20m"
    red = "\x1b[31;20m"
    bold_red = "\x1b[31;1m"
    reset = "\x1b[0m"
    fmt = "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"
    cfmt = (
        f"{white}%(delta)s{reset} - "
        f"{{}}%(levelname)s{{}} - "
        f"{white}%(name)s.%(funcName)s{reset} - "
        f"{grey}%(message)s{reset}"
    )

    FORMATS = {
        logging.DEBUG: cfmt.format(grey, reset),
        logging.INFO: cfmt.format(green, reset),
        logging.WARNING: cfmt.format(yellow, reset),
        logging.ERROR: cfmt.format(red, reset),
        logging.CRITICAL: cfmt.format(bold_red, reset),
    }

    def __init__(self, use_color: bool = COLOR) -> None:
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        """custom logger formatting method"""
        if not self.use_color:
            log_fmt: str = self.fmt
        else:
            log_fmt = self.FORMATS.get(record.levelno, self.fmt)
        elapsed = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.timezone.utc
        )
        record.delta = elapsed.strftime("%H:%M:%S")
        return logging.Formatter(log_fmt).format(record)


def setup_logging(verbose: bool = VERBOSE, use_color: bool = COLOR) -> None:
    """install the colored stream handler on the root logger"""
    strm_handler = logging.StreamHandler()
    strm_handler.setFormatter(CustomFormatter(use_color=use_color))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        handlers=[strm_handler],
        force=True,
    )


# ----------------------------------------------------------------------------
# custom exceptions


class BuildError(Exception):
    """Base exception for build errors"""


class CommandError(BuildError):
    """Exception for command execution errors"""


class CloneError(CommandError):
    """Exception for a failed repository clone"""


class MissingSourceError(BuildError):
    """Exception for a source directory that is expected but absent"""


class ValidationError(BuildError):
    """Exception for validation errors"""


class UnknownStepError(ValidationError):
    """Exception for a step name that is not part of the pipeline"""

    def __init__(self, message: str, steps: Sequence[str] = ()):
        super().__init__(message)
        self.steps = tuple(steps)


# ----------------------------------------------------------------------------
# configure options


@dataclass(frozen=True)
class ConfigureOption:
    """A single configure flag.

    ``--with-<feature>[=<value>]`` and ``--without-<feature>`` are keyed by
    feature name; any other token has ``feature`` set to None and is passed
    through untouched.
    """

    raw: str
    feature: Optional[str] = None
    enabled: bool = True
    value: Optional[str] = None

    @classmethod
    def parse(cls, token: str) -> "ConfigureOption":
        """parse a configure token into a tagged option"""
        token = token.strip()
        if token.startswith("--without-"):
            name = token[len("--without-"):].split("=", 1)[0]
            if name:
                return cls(raw=token, feature=name, enabled=False)
        elif token.startswith("--with-"):
            name, sep, value = token[len("--with-"):].partition("=")
            if name:
                return cls(
                    raw=token, feature=name, enabled=True, value=value if sep else None
                )
        return cls(raw=token)

    @property
    def is_negation(self) -> bool:
        return self.feature is not None and not self.enabled

    def __str__(self) -> str:
        return self.raw


def parse_options(text: Optional[str]) -> list[str]:
    """split a comma-separated option string, dropping empty items"""
    if not text:
        return []
    return [item.strip() for item in text.split(",") if item.strip()]


def merge_options(
    defaults: Sequence[str],
    overrides: Union[str, Sequence[str], None] = None,
    session_type: Optional[str] = None,
) -> list[str]:
    """Merge user configure options on top of the defaults.

    A user option for a feature removes every default for that feature. An
    enabling option is kept, a negating one (``--without-X``) only removes and
    is not emitted. Within the user half, a later option for a feature
    replaces an earlier one. Tokens that are neither form are passed through.

    When ``session_type`` is ``xwayland`` and ``--with-pgtk`` survives the
    merge, ``--with-x-toolkit=gtk3`` is appended.
    """
    if isinstance(overrides, str):
        overrides = parse_options(overrides)
    user_opts = [ConfigureOption.parse(o) for o in overrides or []]

    overridden = {o.feature for o in user_opts if o.feature is not None}
    kept_defaults = [
        d for d in defaults if ConfigureOption.parse(d).feature not in overridden
    ]

    kept_user: list[ConfigureOption] = []
    for opt in user_opts:
        if opt.feature is not None:
            kept_user = [o for o in kept_user if o.feature != opt.feature]
            if opt.is_negation:
                continue
        kept_user.append(opt)

    merged = kept_defaults + [str(o) for o in kept_user]

    if session_type == "xwayland" and PGTK_OPTION in merged:
        toolkit = ConfigureOption.parse(XWAYLAND_TOOLKIT_OPTION).feature
        if not any(ConfigureOption.parse(m).feature == toolkit for m in merged):
            merged.append(XWAYLAND_TOOLKIT_OPTION)

    return merged


# ----------------------------------------------------------------------------
# steps


@dataclass(frozen=True)
class Step:
    """A named unit of the build pipeline"""

    name: str
    action: ActionFn
    description: str = ""


@dataclass(frozen=True)
class StepSelection:
    """Which declared steps to run: all, an inclusion list or an exclusion list"""

    include: Optional[tuple[str, ...]] = None
    exclude: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.include is not None and self.exclude:
            raise ValidationError(
                "an inclusion list and an exclusion list cannot be used together"
            )

    @classmethod
    def from_strings(
        cls, include: Optional[str] = None, exclude: Optional[str] = None
    ) -> "StepSelection":
        """build a selection from comma-separated step lists"""
        return cls(
            include=tuple(parse_options(include)) if include is not None else None,
            exclude=tuple(parse_options(exclude)),
        )


def select_steps(steps: Sequence[Step], selection: StepSelection) -> list[Step]:
    """filter the declared steps, preserving declaration order"""
    log = logging.getLogger("Pipeline")
    names = [s.name for s in steps]
    if selection.include is not None:
        unknown = [n for n in selection.include if n not in names]
        if unknown:
            raise UnknownStepError(
                f"unknown step(s): {', '.join(unknown)} "
                f"(available steps: {', '.join(names)})",
                steps=unknown,
            )
        return [s for s in steps if s.name in selection.include]
    for name in selection.exclude:
        if name not in names:
            log.debug("ignoring unknown step in exclusion list: %s", name)
    return [s for s in steps if s.name not in selection.exclude]


class RunMode(enum.Enum):
    INTERACTIVE = "interactive"
    NON_INTERACTIVE = "non-interactive"
    DRY_RUN = "dry-run"


def confirm(question: str, prompt: PromptFn = input) -> bool:
    """ask a [Y/n] question; an empty answer means yes"""
    answer = prompt(f"{question} [Y/n] ").strip() or "Y"
    return answer[0] in "yY"


# ----------------------------------------------------------------------------
# utility classes


class ShellCmd:
    """Provides external command and file handling."""

    log: logging.Logger

    def cmd(
        self,
        shellcmd: Union[str, list[str]],
        cwd: Pathlike = ".",
        env: Optional[dict[str, str]] = None,
    ) -> None:
        """Run command within working directory

        Args:
            shellcmd: Command as string (will be split safely) or list of args
            cwd: Working directory for command execution
            env: Optional environment replacing the inherited one

        Raises:
            CommandError: If command execution fails
        """
        args = shlex.split(shellcmd) if isinstance(shellcmd, str) else shellcmd
        self.log.info(shlex.join(args))
        try:
            subprocess.check_call(args, cwd=str(cwd), env=env)
        except (subprocess.CalledProcessError, OSError) as e:
            self.log.critical("Command failed: %s", e)
            raise CommandError(f"Command failed: {shlex.join(args)}") from e

    def get(self, shellcmd: Union[str, list[str]], cwd: Pathlike = ".") -> str:
        """get output of shellcmd"""
        args = shlex.split(shellcmd) if isinstance(shellcmd, str) else shellcmd
        try:
            return subprocess.check_output(
                args, encoding="utf8", cwd=str(cwd), stderr=subprocess.DEVNULL
            ).strip()
        except (subprocess.CalledProcessError, OSError) as e:
            raise CommandError(f"Command failed: {shlex.join(args)}") from e

    def succeeds(self, shellcmd: Union[str, list[str]], cwd: Pathlike = ".") -> bool:
        """check whether shellcmd exits with status 0"""
        args = shlex.split(shellcmd) if isinstance(shellcmd, str) else shellcmd
        try:
            result = subprocess.run(
                args,
                cwd=str(cwd),
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                check=False,
            )
        except OSError:
            return False
        return result.returncode == 0

    def fail(self, msg: str, *args: str) -> str:
        """Raise BuildError with formatted message"""
        formatted_msg = msg % args if args else msg
        self.log.critical(formatted_msg)
        raise BuildError(formatted_msg)

    def download(self, url: str, to: Pathlike) -> Path:
        """Download a file from a url to a destination path

        Raises:
            CommandError: If the download fails
        """
        self.log.info("Downloading %s -> %s", url, to)
        try:
            filename, _ = urlretrieve(url, filename=str(to))
        except OSError as e:
            raise CommandError(f"Failed to download {url}: {e}") from e
        return Path(filename)

    def makedirs(self, path: Pathlike, mode: int = 511, exist_ok: bool = True) -> None:
        """Recursive directory creation function"""
        self.log.debug("Making directory: %s", path)
        os.makedirs(path, mode, exist_ok)

    def git_clone(
        self,
        url: str,
        directory: Optional[Pathlike] = None,
        cwd: Pathlike = ".",
    ) -> None:
        """shallow git clone of a repository from a url

        Raises:
            ValidationError: If URL is empty or looks like an option
            CommandError: If git clone fails
        """
        if not url or url.startswith("-"):
            raise ValidationError(f"Invalid git URL: {url}")

        _cmds = ["git", "clone", "--depth", "1", url]
        if directory:
            _cmds.append(str(directory))
        self.cmd(_cmds, cwd=cwd)

    def apt_install(self, *pkgs: str) -> None:
        """install debian packages using apt-get without prompting"""
        self.cmd(
            [
                "sudo",
                "DEBIAN_FRONTEND=noninteractive",
                "apt-get",
                "install",
                "--assume-yes",
                *pkgs,
            ]
        )

    def sed_inplace(self, expression: str, path: Pathlike) -> None:
        """edit a root-owned file in place with sed"""
        self.cmd(["sudo", "sed", "-i", expression, str(path)])


class PlatformInfo(ShellCmd):
    """Detection of host features that change the build"""

    def __init__(self, environ: Optional[dict[str, str]] = None) -> None:
        self.environ = os.environ if environ is None else environ
        self.system = PLATFORM
        self.log = logging.getLogger(self.__class__.__name__)

    @property
    def is_linux(self) -> bool:
        """Check if running on Linux"""
        return self.system == "Linux"

    @property
    def session_type(self) -> Optional[str]:
        """XDG session type, e.g. 'x11', 'wayland' or 'xwayland'"""
        return self.environ.get("XDG_SESSION_TYPE") or None

    def package_version(self, package: str) -> Optional[str]:
        """upstream version of an installed debian package, if any"""
        try:
            version = self.get(["dpkg-query", "-W", "-f=${Version}", package])
        except CommandError:
            return None
        return version.split("-", 1)[0] or None

    def version_compare(self, left: str, op: str, right: str) -> bool:
        """compare debian versions with dpkg semantics"""
        return self.succeeds(["dpkg", "--compare-versions", left, op, right])

    def webkit_version(self) -> Optional[str]:
        return self.package_version(WEBKIT_PACKAGE)

    def xwidgets_supported(self) -> bool:
        """check for a webkit version emacs xwidgets can use

        Logs a warning and returns False when xwidgets are unavailable.
        """
        version = self.webkit_version()
        if version is None:
            self.log.warning(
                "Xwidgets are not available. %s version %s or higher, "
                "but lower than %s, is required.",
                WEBKIT_PACKAGE,
                WEBKIT_REQUIRED,
                WEBKIT_BROKEN,
            )
            return False
        if self.version_compare(
            version, "ge", WEBKIT_REQUIRED
        ) and self.version_compare(version, "lt", WEBKIT_BROKEN):
            return True
        self.log.warning(
            "Xwidgets are not available. Detected %s version is %s. "
            "Version %s or higher but lower than %s is required.",
            WEBKIT_PACKAGE,
            version,
            WEBKIT_REQUIRED,
            WEBKIT_BROKEN,
        )
        return False


class SudoKeepAlive(ShellCmd):
    """Keeps sudo credentials cached while the pipeline runs.

    Used as a context manager: entering validates the credentials once in the
    foreground and starts a daemon thread re-validating them every
    ``interval`` seconds; exiting always stops and joins the thread.
    """

    def __init__(self, interval: float = SUDO_REFRESH_INTERVAL) -> None:
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.log = logging.getLogger(self.__class__.__name__)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _refresh(self) -> None:
        while not self._stop.wait(self.interval):
            if not self.succeeds(["sudo", "-n", "-v"]):
                self.log.warning("could not refresh sudo credentials")

    def start(self) -> None:
        self.cmd(["sudo", "-v"])
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._refresh, name="sudo-keepalive", daemon=True
        )
        self._thread.start()
        if not self._thread.is_alive():
            self.fail("Failed to start sudo refresh thread")
        self.log.debug("sudo refresh started (every %ss)", self.interval)

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
            self.log.debug("sudo refresh stopped")

    def __enter__(self) -> "SudoKeepAlive":
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()


# ----------------------------------------------------------------------------
# main classes


class EmacsBuilder(ShellCmd):
    """Fetches, builds and installs emacs from a git checkout"""

    def __init__(
        self,
        directory: Pathlike = EMACS_DIRECTORY,
        remote_url: str = EMACS_REMOTE_URL,
        configure_options: Optional[str] = None,
        jobs: Optional[int] = None,
        platform_info: Optional[PlatformInfo] = None,
        desktop_file: Pathlike = DESKTOP_FILE,
        icon_dir: Pathlike = ICON_DIR,
        icon_url: str = ICON_URL,
    ) -> None:
        self.directory = Path(directory)
        self.remote_url = remote_url
        self.user_options = parse_options(configure_options)
        self.jobs = jobs or os.cpu_count() or 1
        self.platform = platform_info or PlatformInfo()
        self.desktop_file = Path(desktop_file)
        self.icon_dir = Path(icon_dir)
        self.icon_url = icon_url
        self.default_options: list[str] = list(DEFAULT_CONFIGURE_OPTIONS)
        self.extra_steps: list[Step] = []
        self.log = logging.getLogger(self.__class__.__name__)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.directory}'>"

    def probe(self) -> None:
        """detect optional features, adding their options and steps"""
        if self.platform.xwidgets_supported():
            if XWIDGETS_OPTION not in self.default_options:
                self.default_options.append(XWIDGETS_OPTION)
            if not any(s.name == "fix_emacs_xwidgets" for s in self.extra_steps):
                self.extra_steps.append(
                    Step(
                        "fix_emacs_xwidgets",
                        self.fix_emacs_xwidgets,
                        "work around the WebKit SIGTRAP crash in the desktop entry",
                    )
                )

    @property
    def configure_options(self) -> list[str]:
        """final configure options: defaults merged with user overrides"""
        return merge_options(
            self.default_options, self.user_options, self.platform.session_type
        )

    def steps(self) -> list[Step]:
        """declared steps in execution order"""
        return [
            Step("install_deps", self.install_deps, "install build dependencies with apt-get"),
            Step("kill_emacs", self.kill_emacs, "stop running emacs processes"),
            Step("remove_emacs", self.remove_emacs, "uninstall and clean the previous build"),
            Step("pull_emacs", self.pull_emacs, "clone or update the emacs repository"),
            Step("build_emacs", self.build_emacs, "run autogen, configure and make"),
            Step("install_emacs", self.install_emacs, "install the build"),
            Step("copy_emacs_icon", self.copy_emacs_icon, "set the desktop entry icon"),
        ] + self.extra_steps

    def require_source(self, step: str) -> None:
        if not self.directory.is_dir():
            msg = f"{step}: directory '{self.directory}' doesn't exist"
            self.log.critical(msg)
            raise MissingSourceError(msg)

    def install_deps(self) -> None:
        """install the debian packages needed to build emacs"""
        self.apt_install(*BUILD_DEPENDENCIES)

    def kill_emacs(self) -> None:
        if self.succeeds(["pgrep", "-x", "emacs"]):
            self.log.info("Emacs is running. Killing emacs")
            self.cmd(["pkill", "-x", "emacs"])
        else:
            self.log.info("Emacs is not running.")

    def remove_emacs(self) -> None:
        """uninstall and clean a previous build, if there is a checkout"""
        if not self.directory.is_dir():
            self.log.info("no checkout at %s: nothing to remove", self.directory)
            return
        self.log.info("Uninstalling Emacs")
        self.cmd(["sudo", "make", "uninstall"], cwd=self.directory)
        self.log.info("Cleaning Emacs")
        self.cmd(["sudo", "make", "extraclean"], cwd=self.directory)

    def pull_emacs(self) -> None:
        """clone the repository, or update an existing checkout"""
        if not self.directory.exists():
            self.log.info("Cloning emacs")
            try:
                self.git_clone(self.remote_url, directory=self.directory)
            except CommandError as e:
                raise CloneError(
                    "Failed to clone Emacs repository. "
                    "Check the URL or network connection."
                ) from e
            self.require_source("pull_emacs")
            return

        self.require_source("pull_emacs")
        origin = self.get(["git", "remote", "get-url", "origin"], cwd=self.directory)
        if origin != self.remote_url:
            self.log.info("Updating origin to %s", self.remote_url)
            self.cmd(
                ["git", "remote", "set-url", "origin", self.remote_url],
                cwd=self.directory,
            )
        branch = self.get(
            ["git", "rev-parse", "--abbrev-ref", "HEAD"], cwd=self.directory
        )
        self.log.info("Pulling emacs")
        self.cmd(["git", "pull", "origin", branch], cwd=self.directory)

    def build_emacs(self) -> None:
        self.require_source("build_emacs")
        self.log.info("Building Emacs (using %d jobs)", self.jobs)
        self.cmd(["./autogen.sh"], cwd=self.directory)
        options = self.configure_options
        self.log.info("Emacs will be configured with: %s", " ".join(options))
        self.cmd(["./configure", *options], cwd=self.directory)
        self.cmd(["make", f"-j{self.jobs}"], cwd=self.directory)

    def install_emacs(self) -> None:
        self.require_source("install_emacs")
        self.log.info("Installing Emacs")
        self.cmd(["sudo", "make", "install"], cwd=self.directory)

    def copy_emacs_icon(self) -> None:
        """download the spacemacs logo and point the desktop entry at it"""
        if not self.desktop_file.is_file():
            self.log.info("%s not found: skipping icon", self.desktop_file)
            return
        self.log.info("Loading emacs icon")
        self.makedirs(self.icon_dir)
        icon = self.download(self.icon_url, self.icon_dir / "emacs.svg")
        self.sed_inplace(f"s|^\\(Icon=\\).*|\\1{icon}|", self.desktop_file)

    # Emacs crashes with SIGTRAP when starting a WebKit xwidget; setting SNAP,
    # SNAP_NAME and SNAP_REVISION makes WebKit launch subprocesses via GLib.
    # https://git.savannah.gnu.org/cgit/emacs.git/tree/etc/PROBLEMS?h=master#n181
    def fix_emacs_xwidgets(self) -> None:
        if not self.desktop_file.is_file():
            self.log.info("%s not found: skipping xwidgets fix", self.desktop_file)
            return
        self.sed_inplace(
            "s|Exec=emacs %F|"
            "Exec=env SNAP=emacs SNAP_NAME=emacs SNAP_REVISION=1 emacs %F|",
            self.desktop_file,
        )


class Pipeline:
    """Runs the selected build steps in order"""

    def __init__(
        self,
        builder: EmacsBuilder,
        selection: Optional[StepSelection] = None,
        mode: RunMode = RunMode.NON_INTERACTIVE,
        prompt: PromptFn = input,
        keepalive: Optional[SudoKeepAlive] = None,
    ) -> None:
        self.builder = builder
        self.selection = selection or StepSelection()
        self.mode = mode
        self.prompt = prompt
        self.keepalive = keepalive if keepalive is not None else SudoKeepAlive()
        self.log = logging.getLogger(self.__class__.__name__)

    @property
    def steps(self) -> list[Step]:
        """steps selected for this run"""
        return select_steps(self.builder.steps(), self.selection)

    def run(self) -> list[str]:
        """run the selected steps, returning the names of those executed"""
        steps = self.steps
        self.log.info("Running in %s mode.", self.mode.value)
        self.log.info("Steps to execute: %s", " ".join(s.name for s in steps))

        if self.mode is RunMode.DRY_RUN:
            self.dry_run(steps)
            return []

        executed: list[str] = []
        with self.keepalive:
            for step in steps:
                if self.mode is RunMode.INTERACTIVE and not confirm(
                    f"Execute {step.name}?", self.prompt
                ):
                    self.log.info("Skipping %s", step.name)
                    continue
                self.log.debug("executing %s", step.name)
                step.action()
                executed.append(step.name)
        return executed

    def dry_run(self, steps: Optional[Iterable[Step]] = None) -> None:
        """Display the build plan without running any step."""
        steps = list(self.steps if steps is None else steps)
        builder = self.builder

        print("\n" + "=" * 60)
        print("BUILD PLAN (dry-run)")
        print("=" * 60)

        print("\n[Build Target]")
        print(f"  Repository:        {builder.remote_url}")
        print(f"  Source directory:  {builder.directory}")
        print(f"  Parallel jobs:     {builder.jobs}")
        print(f"  Platform:          {PLATFORM} ({ARCH})")
        print(f"  Session type:      {builder.platform.session_type or '(unknown)'}")

        print(f"\n[Steps] ({len(steps)})")
        if steps:
            for step in steps:
                print(f"  {step.name:<20} {step.description}")
        else:
            print("  (none)")

        print("\n[Configure Options]")
        for opt in builder.configure_options:
            print(f"  {opt}")

        print("\n" + "=" * 60)
        print("End of build plan. No changes were made.")
        print("=" * 60 + "\n")


def resolve_mode(args: argparse.Namespace) -> RunMode:
    """run mode from flags, falling back to the SKIP_PROMPT env variable"""
    if args.dry_run:
        return RunMode.DRY_RUN
    if args.interactive:
        return RunMode.INTERACTIVE
    if args.yes:
        return RunMode.NON_INTERACTIVE
    if SKIP_PROMPT.strip().lower() in ("no", "n", "0", "false"):
        return RunMode.INTERACTIVE
    return RunMode.NON_INTERACTIVE


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="buildemacs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Install and configure Emacs from source.",
        epilog="\n".join(
            [
                "available steps: install_deps, kill_emacs, remove_emacs, pull_emacs,",
                "  build_emacs, install_emacs, copy_emacs_icon,",
                "  fix_emacs_xwidgets (only when a supported libwebkit2gtk-4.1 is installed)",
                "",
                "examples:",
                "  buildemacs                     run all steps without prompting",
                "  buildemacs -i                  confirm each step",
                "  buildemacs -p ~/myemacs -s pull_emacs,build_emacs,install_emacs",
                "  buildemacs -p ~/myemacs -n install_deps,pull_emacs",
                "  buildemacs -c --with-native-compilation=no,--without-pgtk",
            ]
        ),
    )
    opt = parser.add_argument
    mode = parser.add_mutually_exclusive_group()
    steps = parser.add_mutually_exclusive_group()

    # fmt: off
    mode.add_argument("-i", "--interactive", help="prompt for confirmation at each step", action="store_true")
    mode.add_argument("-y", "--yes", help="run without prompting (default)", action="store_true")
    opt("-d", "--dry-run", help="show build plan without building", action="store_true")
    opt("-l", "--list-steps", help="list available steps and exit", action="store_true")
    opt("-v", "--verbose", help="enable debug logging", action="store_true", default=VERBOSE)
    opt("-p", "--path", help="emacs source directory (default: %(default)s)", default=str(EMACS_DIRECTORY), metavar="DIR")
    opt("-u", "--url", help="emacs git repository (default: %(default)s)", default=EMACS_REMOTE_URL)
    steps.add_argument("-s", "--steps", help="comma-separated steps to execute", metavar="STEPS")
    steps.add_argument("-n", "--skip", help="comma-separated steps to skip", metavar="STEPS")
    opt("-c", "--configure-options", help="comma-separated extra configure options", metavar="OPTIONS")
    opt("-j", "--jobs", help="# of build jobs (default: cpu count)", type=int)
    opt("--version", action="version", version=f"%(prog)s {__version__}")
    # fmt: on
    return parser


def attach_option_values(argv: Sequence[str]) -> list[str]:
    """join `-c VALUE` into `-c=VALUE`

    configure options start with `--`, which argparse would otherwise read
    as a flag rather than the value of -c.
    """
    result: list[str] = []
    args = iter(argv)
    for arg in args:
        if arg in ("-c", "--configure-options"):
            value = next(args, None)
            result.append(arg if value is None else f"{arg}={value}")
        else:
            result.append(arg)
    return result


def main(argv: Optional[Sequence[str]] = None) -> int:
    """commandline api entrypoint"""
    parser = build_parser()
    if argv is None:
        argv = sys.argv[1:]
    args = parser.parse_args(attach_option_values(argv))
    setup_logging(verbose=args.verbose)
    log = logging.getLogger("buildemacs")

    if args.jobs is not None and args.jobs < 1:
        parser.error("--jobs must be at least 1")

    builder = EmacsBuilder(
        directory=Path(args.path).expanduser().resolve(),
        remote_url=args.url,
        configure_options=args.configure_options,
        jobs=args.jobs,
    )
    if not builder.platform.is_linux:
        log.warning("%s is not supported: only Debian-based Linux is", PLATFORM)
    builder.probe()

    if args.list_steps:
        for step in builder.steps():
            print(f"{step.name:<20} {step.description}")
        return 0

    pipeline = Pipeline(
        builder,
        selection=StepSelection.from_strings(args.steps, args.skip),
        mode=resolve_mode(args),
    )
    try:
        pipeline.run()
    except UnknownStepError as e:
        log.critical("%s", e)
        if "fix_emacs_xwidgets" in e.steps:
            log.critical(
                "fix_emacs_xwidgets is unavailable: xwidgets need %s >= %s and < %s",
                WEBKIT_PACKAGE, WEBKIT_REQUIRED, WEBKIT_BROKEN,
            )
        return 1
    except EOFError:
        log.critical("no answer on stdin: aborting")
        return 1
    except BuildError as e:
        log.critical("build aborted: %s", e)
        return 1
    except KeyboardInterrupt:
        log.warning("interrupted")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
