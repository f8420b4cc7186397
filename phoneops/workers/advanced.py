"""Workers for the advanced device operations.

Each runs a plan of named phases against the device adapter; the technique
inside a phase belongs to the adapter, the worker only sequences phases and
reports progress.
"""

from __future__ import annotations

from abc import abstractmethod
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field

from phoneops.db.models import SessionKind
from phoneops.workers.base import OperationFailed, ThreadedWorker, WorkerRun, scaled_percent

GENERIC_BYPASS_STEPS = ("device_detection", "preparation", "bypass_execution", "verification", "cleanup")


class PhasedWorker(ThreadedWorker):
    operation: str

    @abstractmethod
    def phases(self, options: Mapping[str, Any]) -> list[str]:
        raise NotImplementedError

    def summarize(self, options: Mapping[str, Any], details: list[Mapping[str, Any]]) -> dict[str, Any]:
        return {"phases_completed": len(details)}

    def run(self, run: WorkerRun, options: Mapping[str, Any]) -> dict[str, Any]:
        plan = self.phases(options)
        details: list[Mapping[str, Any]] = []
        for index, phase in enumerate(plan):
            counters = {"steps_done": index, "steps_total": len(plan)}
            run.report(scaled_percent(index, len(plan), start=1, end=99), counters, phase)
            detail = run.call_adapter(self.adapter.execute_step, run.session.device_id, self.operation, phase, options)
            details.append(detail)
        run.report(99, {"steps_done": len(plan), "steps_total": len(plan)}, "finalizing")
        return self.summarize(options, details)


RepairType = Literal["ios_system_repair", "android_system_repair", "bootloop_fix", "firmware_restore", "factory_reset"]

REPAIR_PHASES: dict[str, tuple[str, ...]] = {
    "ios_system_repair": (
        "downloading_firmware",
        "creating_backup",
        "entering_recovery",
        "flashing_firmware",
        "verifying_system",
        "restoring_data",
    ),
    "android_system_repair": (
        "unlocking_bootloader",
        "flashing_recovery",
        "repairing_system",
        "verifying_boot",
    ),
    "bootloop_fix": ("diagnosing", "fixing_bootloader", "verifying_boot"),
    "firmware_restore": ("downloading_firmware", "creating_backup", "flashing_firmware", "verifying_system"),
    "factory_reset": ("creating_backup", "performing_reset"),
}


class SystemRepairOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    repair_type: RepairType = "bootloop_fix"
    preserve_data: bool = True


class SystemRepairWorker(PhasedWorker):
    kind = SessionKind.SYSTEM_REPAIR
    options_model = SystemRepairOptions
    operation = "system_repair"

    def phases(self, options: Mapping[str, Any]) -> list[str]:
        plan = list(REPAIR_PHASES[str(options["repair_type"])])
        if not options.get("preserve_data", True):
            plan = [phase for phase in plan if phase not in {"creating_backup", "restoring_data"}]
        return plan

    def summarize(self, options: Mapping[str, Any], details: list[Mapping[str, Any]]) -> dict[str, Any]:
        issues_fixed = [item for detail in details for item in detail.get("issues_fixed", ())]
        return {
            "repair_type": options["repair_type"],
            "phases_completed": len(details),
            "issues_fixed": issues_fixed,
            "data_preserved": bool(options.get("preserve_data", True)),
        }


ErasureType = Literal["quick_erase", "secure_erase", "military_grade", "custom_pattern"]

ERASURE_PASSES: dict[str, tuple[str, ...]] = {
    "quick_erase": ("zeroing_data",),
    "secure_erase": ("random_pattern", "complement_pattern", "verification"),
    "military_grade": (
        "random_pattern_1",
        "random_pattern_2",
        "zeros",
        "ones",
        "random_pattern_3",
        "complement",
        "verification",
    ),
    "custom_pattern": ("custom_pattern_1", "custom_pattern_2", "random_overwrite", "verification", "final_verification"),
}


class DataEraserOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    erasure_type: ErasureType = "secure_erase"
    verify_erasure: bool = True
    chunks_per_pass: int = Field(default=10, ge=1, le=100)


class DataEraserWorker(ThreadedWorker):
    """Overwrites device storage pass by pass; each pass is split into chunks for progress."""

    kind = SessionKind.DATA_ERASER
    options_model = DataEraserOptions

    def run(self, run: WorkerRun, options: Mapping[str, Any]) -> dict[str, Any]:
        passes = ERASURE_PASSES[str(options["erasure_type"])]
        chunks = int(options["chunks_per_pass"])
        total_units = len(passes) * chunks
        counters: dict[str, Any] = {"pass_done": 0, "pass_total": len(passes), "chunks_done": 0}

        for pass_index, pattern in enumerate(passes):
            for chunk in range(chunks):
                done_units = pass_index * chunks + chunk
                run.report(scaled_percent(done_units, total_units, start=1, end=95), counters, pattern)
                run.call_adapter(
                    self.adapter.execute_step,
                    run.session.device_id,
                    "data_eraser",
                    pattern,
                    {"pass": pass_index + 1, "chunk": chunk + 1, "chunks_per_pass": chunks},
                )
                counters["chunks_done"] = done_units + 1
            counters["pass_done"] = pass_index + 1

        verified = True
        if options.get("verify_erasure", True):
            run.report(95, counters, "verifying_erasure")
            detail = run.call_adapter(
                self.adapter.execute_step, run.session.device_id, "data_eraser", "verifying_erasure", options
            )
            verified = bool(detail.get("ok", True))
            if not verified:
                raise OperationFailed(
                    "VERIFICATION_FAILED",
                    "recoverable data remained after erasure",
                    {"passes_completed": counters["pass_done"], "verification_passed": False},
                )

        return {
            "erasure_type": options["erasure_type"],
            "passes_completed": counters["pass_done"],
            "verification_passed": verified if options.get("verify_erasure", True) else None,
            "summary": f"{options['erasure_type']} completed with {counters['pass_done']}-pass overwrite",
        }


FrpBypassMethod = Literal[
    "samsung_frp_bypass",
    "lg_frp_bypass",
    "huawei_frp_bypass",
    "xiaomi_frp_bypass",
    "oppo_frp_bypass",
    "vivo_frp_bypass",
    "oneplus_frp_bypass",
    "generic_android_frp",
    "adb_frp_bypass",
    "fastboot_frp_bypass",
    "odin_frp_bypass",
]

FRP_STEPS: dict[str, tuple[str, ...]] = {
    "samsung_frp_bypass": (
        "device_detection",
        "download_tools",
        "adb_connection",
        "odin_preparation",
        "bypass_execution",
        "account_removal",
        "verification",
        "cleanup",
    ),
    "adb_frp_bypass": ("adb_detection", "usb_debugging", "bypass_execution", "verification"),
}


class FrpBypassOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    bypass_method: FrpBypassMethod = "generic_android_frp"


class FrpBypassWorker(PhasedWorker):
    kind = SessionKind.FRP_BYPASS
    options_model = FrpBypassOptions
    operation = "frp_bypass"

    def phases(self, options: Mapping[str, Any]) -> list[str]:
        return list(FRP_STEPS.get(str(options["bypass_method"]), GENERIC_BYPASS_STEPS))

    def summarize(self, options: Mapping[str, Any], details: list[Mapping[str, Any]]) -> dict[str, Any]:
        return {"bypass_method": options["bypass_method"], "steps_completed": len(details)}


ICloudBypassMethod = Literal[
    "checkra1n_bypass",
    "unc0ver_bypass",
    "palera1n_bypass",
    "icloud_dns_bypass",
    "activation_lock_bypass",
    "generic_ios_bypass",
]

ICLOUD_STEPS: dict[str, tuple[str, ...]] = {
    "checkra1n_bypass": (
        "device_detection",
        "vulnerability_check",
        "dfu_mode",
        "exploit_execution",
        "jailbreak_installation",
        "bypass_tools",
        "activation_bypass",
        "icloud_removal",
        "verification",
        "cleanup",
    ),
    "icloud_dns_bypass": ("dns_setup", "network_config", "dns_redirect", "bypass_execution", "verification"),
}


class ICloudBypassOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    bypass_method: ICloudBypassMethod = "generic_ios_bypass"


class ICloudBypassWorker(PhasedWorker):
    kind = SessionKind.ICLOUD_BYPASS
    options_model = ICloudBypassOptions
    operation = "icloud_bypass"

    def phases(self, options: Mapping[str, Any]) -> list[str]:
        return list(ICLOUD_STEPS.get(str(options["bypass_method"]), GENERIC_BYPASS_STEPS))

    def summarize(self, options: Mapping[str, Any], details: list[Mapping[str, Any]]) -> dict[str, Any]:
        return {"bypass_method": options["bypass_method"], "steps_completed": len(details)}


HEARTBEAT_EVERY_ATTEMPTS = 200

UnlockMethod = Literal["pin_bruteforce", "pattern_analysis", "password_dictionary", "biometric_bypass"]


class ScreenUnlockOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    unlock_method: UnlockMethod = "pin_bruteforce"
    pin_length: int = Field(default=4, ge=4, le=8)
    max_patterns: int = Field(default=1000, ge=1)
    dictionary_size: int = Field(default=10000, ge=1)
    max_attempts: int | None = Field(default=None, ge=1)


def total_unlock_attempts(options: Mapping[str, Any]) -> int:
    method = options["unlock_method"]
    if method == "pin_bruteforce":
        total = 10 ** int(options["pin_length"])
    elif method == "pattern_analysis":
        total = int(options["max_patterns"])
    elif method == "password_dictionary":
        total = int(options["dictionary_size"])
    else:
        total = 1
    cap = options.get("max_attempts")
    return min(total, int(cap)) if cap else total


class ScreenUnlockWorker(ThreadedWorker):
    kind = SessionKind.SCREEN_UNLOCK
    options_model = ScreenUnlockOptions

    def run(self, run: WorkerRun, options: Mapping[str, Any]) -> dict[str, Any]:
        method = str(options["unlock_method"])
        total = total_unlock_attempts(options)
        last_percent = -1
        for attempt in range(total):
            percent = scaled_percent(attempt, total, start=1, end=99)
            if percent != last_percent or attempt % HEARTBEAT_EVERY_ATTEMPTS == 0:
                run.report(percent, {"attempts_done": attempt, "attempts_total": total}, "attempting")
                last_percent = percent
            code = run.call_adapter(self.adapter.attempt_unlock, run.session.device_id, method, attempt)
            if code is not None:
                return {"unlock_method": method, "unlock_code": code, "attempts": attempt + 1}

        raise OperationFailed(
            "UNLOCK_EXHAUSTED",
            f"no unlock candidate succeeded after {total} attempts",
            {"unlock_method": method, "attempts": total},
        )
