"""
Hardware accelerator probing for speech recognition and local LLM inference.
Decides between CUDA and CPU from the CUDA runtime libraries that can be found
and the devices ctranslate2 reports.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger("meeting_intel.hardware")


@dataclass(frozen=True)
class CUDALibrary:
    """A CUDA runtime library needed for GPU inference."""
    name: str
    windows_files: Tuple[str, ...]
    linux_prefixes: Tuple[str, ...]
    required_for: Tuple[str, ...]  # e.g. ("whisper_gpu", "llama_gpu")


CUDA_LIBRARIES: Dict[str, CUDALibrary] = {
    "cublas": CUDALibrary(
        name="cublas",
        windows_files=("cublas64_12.dll", "cublasLt64_12.dll"),
        linux_prefixes=("libcublas.so.12", "libcublasLt.so.12"),
        required_for=("whisper_gpu", "llama_gpu"),
    ),
    "cudart": CUDALibrary(
        name="cudart",
        windows_files=("cudart64_12.dll",),
        linux_prefixes=("libcudart.so.12",),
        required_for=("whisper_gpu", "llama_gpu"),
    ),
    "cudnn": CUDALibrary(
        name="cudnn",
        windows_files=("cudnn64_9.dll",),
        linux_prefixes=("libcudnn.so.9",),
        required_for=("whisper_gpu",),
    ),
}


@dataclass(frozen=True)
class AcceleratorChoice:
    device: str  # cuda|cpu
    compute_type: str  # float16|int8
    reason: str


def _search_dirs(extra_dirs: Optional[List[Path]] = None) -> List[Path]:
    dirs: List[Path] = list(extra_dirs or [])
    if getattr(sys, "frozen", False) and hasattr(sys, "_MEIPASS"):
        dirs.append(Path(sys._MEIPASS))
    for var in ("PATH", "LD_LIBRARY_PATH", "CUDA_PATH"):
        for entry in os.environ.get(var, "").split(os.pathsep):
            if entry:
                dirs.append(Path(entry))
    if sys.platform.startswith("linux"):
        dirs.extend(Path(p) for p in ("/usr/lib/x86_64-linux-gnu", "/usr/local/cuda/lib64", "/usr/lib64"))
    return dirs


def _library_present(lib: CUDALibrary, dirs: List[Path]) -> bool:
    names = lib.windows_files if sys.platform == "win32" else lib.linux_prefixes
    for name in names:
        if not any((d / name).exists() for d in dirs):
            return False
    return True


def missing_cuda_libraries(feature: str, extra_dirs: Optional[List[Path]] = None) -> List[str]:
    """Names of CUDA libraries required by ``feature`` that cannot be found."""
    dirs = _search_dirs(extra_dirs)
    return [
        key
        for key, lib in CUDA_LIBRARIES.items()
        if feature in lib.required_for and not _library_present(lib, dirs)
    ]


def cuda_device_count() -> int:
    try:
        import ctranslate2  # type: ignore

        return int(ctranslate2.get_cuda_device_count())
    except Exception as exc:  # ctranslate2 raises plain RuntimeErrors without a driver
        logger.debug("CUDA device query failed: %s", exc)
        return 0


def probe_accelerator(preference: str = "auto", feature: str = "whisper_gpu") -> AcceleratorChoice:
    """Pick the inference device for ``feature`` given the user's preference."""
    pref = (preference or "auto").lower()
    if pref == "cpu":
        return AcceleratorChoice("cpu", "int8", "cpu requested")

    if cuda_device_count() <= 0:
        reason = "no CUDA device detected"
    else:
        missing = missing_cuda_libraries(feature)
        if not missing:
            return AcceleratorChoice("cuda", "float16", "CUDA device and runtime libraries found")
        reason = f"missing CUDA libraries: {', '.join(missing)}"

    if pref == "cuda":
        logger.warning("CUDA requested but unavailable (%s), falling back to CPU", reason)
    return AcceleratorChoice("cpu", "int8", reason)


def llama_gpu_layers(preference: str = "auto") -> int:
    """Number of layers to offload for llama-cpp (0 = CPU only)."""
    choice = probe_accelerator(preference, feature="llama_gpu")
    if choice.device != "cuda":
        return 0
    try:
        from llama_cpp import llama_supports_gpu_offload  # type: ignore
    except ImportError:
        return 0
    return 999 if bool(llama_supports_gpu_offload()) else 0
