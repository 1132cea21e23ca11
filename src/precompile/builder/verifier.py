"""
Post-build verifier for a composed xcframework.

Checks are read-only. Defects are reported in a BundleReport; only an unusable
input (no bundle at the given path) raises VerificationError.
"""

from collections.abc import Iterable
from pathlib import Path
import plistlib
import re
import struct
import tempfile

from attrs import define, field
from pyvider.telemetry import logger

from .compiler import Runner, run_tool
from .config import Settings
from .exceptions import ToolchainError, VerificationError
from .models import XCFrameworkSlice

MACHO_MAGICS = frozenset(
    {
        0xFEEDFACE,  # 32-bit
        0xFEEDFACF,  # 64-bit
        0xCEFAEDFE,
        0xCFFAEDFE,
        0xCAFEBABE,  # fat
        0xCAFEBABF,  # fat, 64-bit offsets
        0xBEBAFECA,
        0xBFBAFECA,
    }
)

SYSTEM_PATH_PREFIXES = (
    "/Applications/Xcode",
    "/Library/Developer",
    "/usr/",
    "/System/",
    "/AppleInternal/",
    "/var/db/xcode_select_link/",
)

JUNK_FILE_NAMES = frozenset({".DS_Store"})

UUID_PATTERN = re.compile(r"UUID:\s+([0-9A-F-]{36})", re.IGNORECASE)
COMP_DIR_PATTERN = re.compile(r'DW_AT_comp_dir\s*\("([^"]+)"\)')
LINKED_LIBRARY_PATTERN = re.compile(r"^\s+(\S.*?)\s+\(compatibility version", re.MULTILINE)
MODULE_HEADER_PATTERN = re.compile(
    r'^\s*((?:(?:exclude|private|textual)\s+)*)(?:umbrella\s+)?header\s+"([^"]+)"',
    re.MULTILINE,
)
UMBRELLA_DIR_PATTERN = re.compile(r'^\s*umbrella\s+"([^"]+)"', re.MULTILINE)

# Install names a device resolves without the build machine's file system.
PORTABLE_INSTALL_NAME_PREFIXES = ("@", "/usr/lib/", "/System/")

# (SupportedPlatform, SupportedPlatformVariant) -> SDK folder name
SDK_NAMES: dict[tuple[str, str | None], str] = {
    ("ios", None): "iphoneos",
    ("ios", "simulator"): "iphonesimulator",
    ("ios", "maccatalyst"): "maccatalyst",
    ("macos", None): "macosx",
    ("tvos", None): "appletvos",
    ("tvos", "simulator"): "appletvsimulator",
}

TARGET_OS: dict[str, str] = {
    "iphoneos": "ios15.0",
    "iphonesimulator": "ios15.0-simulator",
    "maccatalyst": "ios15.0-macabi",
    "macosx": "macos11.0",
    "appletvos": "tvos15.0",
    "appletvsimulator": "tvos15.0-simulator",
}

MAX_REPORTED_PATHS = 10


@define(frozen=True, slots=True)
class CheckResult:
    name: str
    success: bool
    message: str
    details: str = ""
    soft: bool = False


@define(slots=True)
class SliceReport:
    slice: XCFrameworkSlice
    objc_only: bool
    checks: list[CheckResult] = field(factory=list)
    linked_dependencies: list[str] = field(factory=list)

    @property
    def failures(self) -> list[CheckResult]:
        return [c for c in self.checks if not c.success and not c.soft]

    @property
    def warnings(self) -> list[CheckResult]:
        return [c for c in self.checks if not c.success and c.soft]


@define(slots=True)
class BundleReport:
    xcframework_path: Path
    info_plist: CheckResult
    codesign: CheckResult | None = None
    junk_files: list[str] = field(factory=list)
    slices: list[SliceReport] = field(factory=list)

    @property
    def failures(self) -> list[str]:
        problems = []
        if not self.info_plist.success:
            problems.append(f"Info.plist: {self.info_plist.message}")
        if self.codesign is not None and not self.codesign.success:
            problems.append(f"codesign: {self.codesign.message}")
        for report in self.slices:
            problems.extend(
                f"{report.slice.slice_id}: {check.name}: {check.message}"
                for check in report.failures
            )
        return problems

    @property
    def warnings(self) -> list[str]:
        notes = [f"junk file: {name}" for name in self.junk_files]
        for report in self.slices:
            notes.extend(
                f"{report.slice.slice_id}: {check.name}: {check.message}"
                for check in report.warnings
            )
        return notes

    @property
    def outcome(self) -> str:
        if self.failures or not self.slices:
            return "failed"
        if self.warnings:
            return "warning"
        return "success"


def _passed(name: str, message: str) -> CheckResult:
    return CheckResult(name=name, success=True, message=message)


def _failed(name: str, message: str, details: str = "", soft: bool = False) -> CheckResult:
    return CheckResult(name=name, success=False, message=message, details=details, soft=soft)


def read_slices(xcframework_path: Path) -> tuple[CheckResult, list[XCFrameworkSlice]]:
    """Parses the slices declared by the bundle's Info.plist."""
    info_plist = xcframework_path / "Info.plist"
    if not info_plist.is_file():
        return _failed("info-plist", "Info.plist not found"), []
    try:
        with info_plist.open("rb") as f:
            data = plistlib.load(f)
    except (plistlib.InvalidFileException, ValueError, OSError) as e:
        return _failed("info-plist", f"Info.plist is not a valid property list: {e}"), []

    libraries = data.get("AvailableLibraries") if isinstance(data, dict) else None
    if not isinstance(libraries, list) or not libraries:
        return _failed("info-plist", "Info.plist declares no AvailableLibraries"), []

    slices = []
    for library in libraries:
        try:
            slice_id = library["LibraryIdentifier"]
            library_path = library["LibraryPath"]
            platform = library["SupportedPlatform"]
        except (KeyError, TypeError):
            return _failed("info-plist", f"Malformed AvailableLibraries entry: {library!r}"), []
        variant = library.get("SupportedPlatformVariant")
        framework_path = xcframework_path / slice_id / library_path
        framework_name = Path(library_path).stem
        binary = library.get("BinaryPath") or f"{library_path}/{framework_name}"
        slices.append(
            XCFrameworkSlice(
                slice_id=slice_id,
                framework_name=framework_name,
                framework_path=framework_path,
                binary_path=xcframework_path / slice_id / binary,
                sdk_name=SDK_NAMES.get((platform, variant), platform),
            )
        )
    return _passed("info-plist", f"{len(slices)} slice(s) declared"), slices


def parse_linked_libraries(output: str) -> list[str]:
    """Install names listed by `otool -L`, in load order."""
    return LINKED_LIBRARY_PATTERN.findall(output)


def module_map_headers(module_map: str) -> tuple[list[str], list[str], list[str]]:
    """Returns the (public, private) headers and umbrella directories a module map names."""
    public, private = [], []
    for qualifiers, header in MODULE_HEADER_PATTERN.findall(module_map):
        if "exclude" in qualifiers.split():
            continue
        (private if "private" in qualifiers.split() else public).append(header)
    return public, private, UMBRELLA_DIR_PATTERN.findall(module_map)


def find_junk_files(xcframework_path: Path) -> list[str]:
    return sorted(
        path.relative_to(xcframework_path).as_posix()
        for path in xcframework_path.rglob("*")
        if path.name in JUNK_FILE_NAMES
    )


def find_dsym(dsym_roots: Iterable[Path], sdk_name: str, framework_name: str) -> Path | None:
    """
    Looks for `<root>/<dir>/<Name>.framework.dSYM` where `<dir>` names the SDK,
    e.g. `Debug-iphoneos` for `iphoneos`, or sits directly in `<root>`.
    """
    bundle_name = f"{framework_name}.framework.dSYM"
    sdk = sdk_name.lower()
    for root in dsym_roots:
        if not root.is_dir():
            continue
        if (root / bundle_name).exists():
            return root / bundle_name
        for candidate in sorted(p for p in root.iterdir() if p.is_dir()):
            name = candidate.name.lower()
            if (name == sdk or name.endswith(f"-{sdk}")) and (candidate / bundle_name).exists():
                return candidate / bundle_name
    return None


def parse_uuids(output: str) -> set[str]:
    return {match.upper() for match in UUID_PATTERN.findall(output)}


def classify_comp_dirs(
    comp_dirs: Iterable[str], canonical_prefix: str
) -> tuple[list[str], list[str], list[str]]:
    """Splits comp dirs into (canonical, system, unmapped absolute); relative paths are dropped."""
    canonical, system, unmapped = [], [], []
    prefix = canonical_prefix.rstrip("/") + "/"
    for comp_dir in sorted(set(comp_dirs)):
        if comp_dir.startswith(prefix) or comp_dir == prefix.rstrip("/"):
            canonical.append(comp_dir)
        elif comp_dir.startswith(SYSTEM_PATH_PREFIXES):
            system.append(comp_dir)
        elif comp_dir.startswith("/"):
            unmapped.append(comp_dir)
    return canonical, system, unmapped


class PostBuildVerifier:
    def __init__(
        self,
        settings: Settings,
        runner: Runner = run_tool,
        check_signature: bool = False,
        check_module_import: bool = True,
        check_swift_interface: bool = True,
        check_dsyms: bool = True,
    ) -> None:
        self.settings = settings
        self.runner = runner
        self.check_signature = check_signature
        self.check_module_import = check_module_import
        self.check_swift_interface = check_swift_interface
        self.check_dsyms = check_dsyms

    def verify(self, xcframework_path: Path, dsyms_dir: Path | None = None) -> BundleReport:
        if not xcframework_path.is_dir():
            raise VerificationError(f"No xcframework found at {xcframework_path}")

        logger.info(f"Verifying {xcframework_path.name}")
        info_plist, slices = read_slices(xcframework_path)
        report = BundleReport(
            xcframework_path=xcframework_path,
            info_plist=info_plist,
            junk_files=find_junk_files(xcframework_path),
        )
        if self.check_signature:
            report.codesign = self._check_codesign(xcframework_path)

        roots = [dsyms_dir or xcframework_path.parent / "dSYMs"]
        for xcframework_slice in slices:
            report.slices.append(
                self._verify_slice(
                    xcframework_slice,
                    roots + [xcframework_path / xcframework_slice.slice_id / "dSYMs"],
                )
            )

        for problem in report.failures:
            logger.warning("Verification failed", bundle=xcframework_path.name, problem=problem)
        for note in report.warnings:
            logger.warning("Verification warning", bundle=xcframework_path.name, note=note)
        logger.info(f"Verification of {xcframework_path.name}: {report.outcome}")
        return report

    def _verify_slice(self, xcframework_slice: XCFrameworkSlice, dsym_roots: list[Path]) -> SliceReport:
        framework = xcframework_slice.framework_path
        name = xcframework_slice.framework_name
        objc_only = not (framework / "Modules" / f"{name}.swiftmodule").exists()
        report = SliceReport(slice=xcframework_slice, objc_only=objc_only)
        checks = report.checks

        checks.append(self._check_macho(xcframework_slice.binary_path))
        checks.append(self._check_linked_dependencies(report))
        checks.append(self._check_dir(framework / "Headers", "headers"))
        checks.append(self._check_dir(framework / "Modules", "modules"))
        module_map = framework / "Modules" / "module.modulemap"
        checks.append(
            _passed("module-map", "module.modulemap present")
            if module_map.is_file()
            else _failed("module-map", f"module.modulemap missing in {framework.name}")
        )
        if module_map.is_file():
            checks.append(self._check_modular_headers(framework, module_map))
        if self.check_module_import and module_map.is_file():
            checks.append(self._check_module_import(xcframework_slice))
        if self.check_swift_interface and not objc_only:
            checks.extend(self._check_swift_interfaces(xcframework_slice))

        if self.check_dsyms:
            dsym = find_dsym(dsym_roots, xcframework_slice.sdk_name, name)
            checks.extend(self._check_dsym(xcframework_slice, dsym))
        return report

    def _check_macho(self, binary: Path) -> CheckResult:
        try:
            with binary.open("rb") as f:
                header = f.read(4)
        except OSError as e:
            return _failed("mach-o", f"Cannot read binary {binary.name}: {e}")
        if len(header) < 4:
            return _failed("mach-o", f"Binary {binary.name} is truncated")
        (magic,) = struct.unpack(">I", header)
        if magic not in MACHO_MAGICS:
            return _failed("mach-o", f"Binary {binary.name} has bad magic 0x{magic:08x}")
        return _passed("mach-o", f"Mach-O magic 0x{magic:08x}")

    def _check_dir(self, path: Path, name: str) -> CheckResult:
        if not path.is_dir():
            return _failed(name, f"{path.name} directory missing")
        if not any(path.iterdir()):
            return _failed(name, f"{path.name} directory is empty")
        return _passed(name, f"{path.name} present")

    def _run(self, command: list[str], timeout: float) -> tuple[str | None, str]:
        try:
            return self.runner(command, timeout=timeout), ""
        except ToolchainError as e:
            return None, (e.stderr.strip() or str(e).splitlines()[0])

    def _check_codesign(self, xcframework_path: Path) -> CheckResult:
        output, error = self._run(
            ["codesign", "--verify", "--verbose", str(xcframework_path)],
            self.settings.verify_timeout,
        )
        if output is None:
            return _failed("codesign", f"Signature invalid: {error}")
        return _passed("codesign", "Signature valid")

    def _check_module_import(self, xcframework_slice: XCFrameworkSlice) -> CheckResult:
        name = xcframework_slice.framework_name
        sdk = xcframework_slice.sdk_name
        parts = xcframework_slice.slice_id.split("-")
        arch = parts[1].split("_")[0] if len(parts) > 1 else "arm64"
        target_os = TARGET_OS.get(sdk, "ios15.0")
        with tempfile.TemporaryDirectory() as scratch:
            source = Path(scratch) / "import_check.m"
            source.write_text(f"@import {name};\n")
            output, error = self._run(
                [
                    "xcrun", "--sdk", "macosx" if sdk == "maccatalyst" else sdk,
                    "clang", "-fmodules", "-fsyntax-only",
                    "-target", f"{arch}-apple-{target_os}",
                    f"-fmodules-cache-path={scratch}/ModuleCache",
                    "-F", str(xcframework_slice.framework_path.parent),
                    str(source),
                ],
                self.settings.verify_timeout,
            )
        if output is None:
            return _failed("clang-module-import", f"@import {name} failed", details=error, soft=True)
        return _passed("clang-module-import", f"@import {name} ok")

    def _check_linked_dependencies(self, report: SliceReport) -> CheckResult:
        binary = report.slice.binary_path
        output, error = self._run(["otool", "-L", str(binary)], self.settings.verify_timeout)
        if output is None:
            return _failed(
                "linked-dependencies", f"Failed to list linked libraries: {error}", soft=True
            )
        report.linked_dependencies = parse_linked_libraries(output)
        stray = [
            name
            for name in report.linked_dependencies
            if not name.startswith(PORTABLE_INSTALL_NAME_PREFIXES)
        ]
        if stray:
            return _failed(
                "linked-dependencies",
                f"Links against {len(stray)} library path(s) that only exist on the build machine",
                details="\n".join(stray[:MAX_REPORTED_PATHS]),
                soft=True,
            )
        return _passed(
            "linked-dependencies", f"{len(report.linked_dependencies)} linked libraries"
        )

    def _check_modular_headers(self, framework: Path, module_map: Path) -> CheckResult:
        try:
            public, private, umbrella_dirs = module_map_headers(module_map.read_text())
        except (OSError, UnicodeDecodeError) as e:
            return _failed("modular-headers", f"Cannot read module.modulemap: {e}", soft=True)
        if not (public or private or umbrella_dirs):
            return _failed("modular-headers", "module.modulemap names no headers", soft=True)

        missing = [
            *(h for h in public if not (framework / "Headers" / h).is_file()),
            *(h for h in private if not (framework / "PrivateHeaders" / h).is_file()),
            *(d for d in umbrella_dirs if not (framework / "Headers" / d).is_dir()),
        ]
        if missing:
            return _failed(
                "modular-headers",
                f"module.modulemap names {len(missing)} missing header(s)",
                details="\n".join(missing[:MAX_REPORTED_PATHS]),
                soft=True,
            )
        return _passed(
            "modular-headers",
            f"{len(public) + len(private) + len(umbrella_dirs)} module map header(s) present",
        )

    def _check_swift_interfaces(self, xcframework_slice: XCFrameworkSlice) -> list[CheckResult]:
        name = xcframework_slice.framework_name
        sdk = xcframework_slice.sdk_name
        swiftmodule = xcframework_slice.framework_path / "Modules" / f"{name}.swiftmodule"
        interfaces = sorted(
            p
            for p in swiftmodule.glob("*.swiftinterface")
            if not p.name.endswith((".private.swiftinterface", ".package.swiftinterface"))
        )
        if not interfaces:
            return [
                _failed(
                    "swift-interface",
                    f"No .swiftinterface in {swiftmodule.name}; built without library evolution?",
                    soft=True,
                )
            ]

        checks = []
        target_os = TARGET_OS.get(sdk, "ios15.0")
        for interface in interfaces:
            arch = interface.name.split("-")[0]
            with tempfile.TemporaryDirectory() as scratch:
                output, error = self._run(
                    [
                        "xcrun", "--sdk", "macosx" if sdk == "maccatalyst" else sdk,
                        "swiftc", "-typecheck-module-from-interface", str(interface),
                        "-module-name", name,
                        "-target", f"{arch}-apple-{target_os}",
                        "-module-cache-path", f"{scratch}/ModuleCache",
                        "-F", str(xcframework_slice.framework_path.parent),
                    ],
                    self.settings.verify_timeout,
                )
            if output is None:
                checks.append(
                    _failed(
                        "swift-interface",
                        f"{interface.name} does not typecheck",
                        details=error,
                        soft=True,
                    )
                )
            else:
                checks.append(_passed("swift-interface", f"{interface.name} typechecks"))
        return checks

    def _check_dsym(self, xcframework_slice: XCFrameworkSlice, dsym: Path | None) -> list[CheckResult]:
        if dsym is None:
            return [
                _failed(
                    "dsym-present",
                    f"No dSYM found for slice {xcframework_slice.slice_id} "
                    f"(SDK {xcframework_slice.sdk_name})",
                )
            ]
        if not (dsym / "Contents" / "Resources" / "DWARF").is_dir():
            return [_failed("dsym-present", f"dSYM found but missing DWARF directory: {dsym}")]

        checks = [_passed("dsym-present", f"dSYM present: {dsym.parent.name}/{dsym.name}")]
        checks.extend(self._check_uuids(xcframework_slice.binary_path, dsym))
        checks.append(self._check_comp_dirs(dsym))
        return checks

    def _check_uuids(self, binary: Path, dsym: Path) -> list[CheckResult]:
        timeout = self.settings.verify_timeout
        binary_output, error = self._run(["dwarfdump", "--uuid", str(binary)], timeout)
        if binary_output is None:
            return [_failed("binary-uuids", f"Failed to get UUIDs from binary: {error}")]
        binary_uuids = parse_uuids(binary_output)
        if not binary_uuids:
            return [_failed("binary-uuids", "No UUIDs found in framework binary")]

        checks = [_passed("binary-uuids", f"{len(binary_uuids)} UUID(s) in binary")]
        dsym_output, error = self._run(["dwarfdump", "--uuid", str(dsym)], timeout)
        if dsym_output is None:
            checks.append(_failed("dsym-uuid-match", f"Failed to get UUIDs from dSYM: {error}"))
            return checks
        dsym_uuids = parse_uuids(dsym_output)
        missing = sorted(binary_uuids - dsym_uuids)
        if not dsym_uuids:
            checks.append(_failed("dsym-uuid-match", "No UUIDs found in dSYM"))
        elif missing:
            checks.append(
                _failed(
                    "dsym-uuid-match",
                    f"Binary UUIDs not found in dSYM: {', '.join(missing)}",
                    details=(
                        f"Binary UUIDs: {', '.join(sorted(binary_uuids))}\n"
                        f"dSYM UUIDs: {', '.join(sorted(dsym_uuids))}"
                    ),
                )
            )
        else:
            checks.append(
                _passed("dsym-uuid-match", f"UUIDs match ({len(binary_uuids)} architecture(s))")
            )
        return checks

    def _check_comp_dirs(self, dsym: Path) -> CheckResult:
        output, error = self._run(
            ["dwarfdump", "--debug-info", "--recurse-depth=0", str(dsym)],
            self.settings.dwarf_timeout,
        )
        if output is None:
            return _failed("debug-prefix-map", f"Failed to read DWARF debug info: {error}")

        comp_dirs = COMP_DIR_PATTERN.findall(output)
        if not comp_dirs:
            return _passed("debug-prefix-map", "No DW_AT_comp_dir entries found (may be stripped)")

        canonical, system, unmapped = classify_comp_dirs(
            comp_dirs, self.settings.canonical_source_prefix
        )
        if unmapped:
            shown = unmapped[:MAX_REPORTED_PATHS]
            if len(unmapped) > MAX_REPORTED_PATHS:
                shown.append(f"... and {len(unmapped) - MAX_REPORTED_PATHS} more")
            return _failed(
                "debug-prefix-map",
                f"Found {len(unmapped)} unmapped absolute path(s) in DWARF debug info",
                details="\n".join(shown),
            )
        return _passed(
            "debug-prefix-map",
            f"Debug prefix mapping ok ({len(canonical)} canonical, {len(system)} system path(s))",
        )
