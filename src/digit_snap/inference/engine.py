from __future__ import annotations

import os
import pickle
import threading
import zipfile
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import TYPE_CHECKING, Final, Protocol

import torch
from torch import Tensor

from ..config import Settings
from ..errors import ShapeError
from ..logging import get_logger
from ..preprocess import PipelineConfig, preprocess_signature
from .manifest import ModelManifest
from .result import N_CLASSES, reduce_scores
from .types import InputLayout, PredictOutput

_MLP_HIDDEN: Final[int] = 128
_RESNET_FEATURES: Final[int] = 512
_LOAD_ERRORS: Final[tuple[type[BaseException], ...]] = (
    OSError,
    ValueError,
    RuntimeError,
    TypeError,
    EOFError,
    pickle.UnpicklingError,
    zipfile.BadZipFile,
)


class TorchModel(Protocol):
    def eval(self) -> object: ...
    def __call__(self, x: Tensor) -> Tensor: ...
    def load_state_dict(self, sd: dict[str, Tensor]) -> object: ...


class InferenceEngine:
    """Runs the classifier forward pass on a bounded thread pool.

    The model is an explicit dependency: ``try_load_active`` installs the
    artifact named by the settings, and ``install`` accepts any model object
    (tests pass small fakes). Model and manifest are swapped together under a
    lock, so a prediction always sees a consistent pair.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._logger = get_logger()
        self._pool = _make_pool(settings)
        self._model_lock = threading.RLock()
        self._model: TorchModel | None = None
        self._manifest: ModelManifest | None = None
        self._artifacts_dir: Path | None = None
        self._last_manifest_mtime: float | None = None
        self._last_model_mtime: float | None = None
        self._signature = preprocess_signature(PipelineConfig.from_settings(settings.pipeline))
        torch.set_num_threads(1)

    @property
    def ready(self) -> bool:
        return self._model is not None and self._manifest is not None

    @property
    def model_id(self) -> str | None:
        return self._manifest.model_id if self._manifest is not None else None

    @property
    def manifest(self) -> ModelManifest | None:
        return self._manifest

    @property
    def input_layout(self) -> InputLayout:
        man = self._manifest
        return man.input_layout if man is not None else "flat"

    @property
    def signature(self) -> str:
        return self._signature

    def install(self, model: TorchModel, manifest: ModelManifest) -> None:
        with self._model_lock:
            self._model = model
            self._manifest = manifest

    def submit_predict(self, preprocessed: Tensor) -> Future[PredictOutput]:
        return self._pool.submit(self._predict_impl, preprocessed)

    def execute(self, preprocessed: Tensor) -> tuple[float, ...]:
        """Forward pass returning one probability per class."""
        with self._model_lock:
            man = self._manifest
            model_obj = self._model
        if man is None or model_obj is None:
            raise RuntimeError("Model not loaded")
        return _execute(model_obj, man, preprocessed)

    def _predict_impl(self, preprocessed: Tensor) -> PredictOutput:
        with self._model_lock:
            man = self._manifest
            model_obj = self._model
        if man is None or model_obj is None:
            raise RuntimeError("Model not loaded")
        scores = _execute(model_obj, man, preprocessed)
        return reduce_scores(
            scores,
            man.model_id,
            precision=int(self._settings.digits.display_precision),
            n_classes=N_CLASSES,
        )

    def try_load_active(self) -> None:
        active = self._settings.digits.active_model
        model_dir = self._settings.digits.model_dir / active
        manifest_path = model_dir / "manifest.json"
        model_path = model_dir / "model.pt"
        if not (manifest_path.exists() and model_path.exists()):
            self._logger.info("model_artifact_missing model_id=%s", active)
            return
        try:
            manifest = ModelManifest.from_path(manifest_path)
        except (OSError, ValueError) as exc:
            self._logger.info("manifest_load_failed error=%s", exc)
            return
        if manifest.preprocess_hash != self._signature:
            self._logger.info(
                "preprocess_mismatch model_id=%s expected=%s got=%s",
                manifest.model_id,
                self._signature,
                manifest.preprocess_hash,
            )
            return
        if manifest.canvas_side != self._settings.pipeline.canvas_side:
            self._logger.info("canvas_side_mismatch model_id=%s", manifest.model_id)
            return
        if manifest.arch == "resnet18" and manifest.input_layout != "nchw":
            self._logger.info("input_layout_invalid arch=resnet18 layout=%s", manifest.input_layout)
            return
        try:
            sd = load_state_dict_file(model_path)
            validate_state_dict(sd, manifest.arch, int(manifest.n_classes), manifest.canvas_side)
            model = _build_model(
                arch=manifest.arch,
                n_classes=int(manifest.n_classes),
                side=int(manifest.canvas_side),
                hidden=_mlp_hidden(sd),
            )
            model.load_state_dict(sd)
        except _LOAD_ERRORS as exc:
            self._logger.info("state_dict_load_failed error=%s", exc)
            return
        with self._model_lock:
            self._model = model
            self._manifest = manifest
            self._artifacts_dir = model_dir
            try:
                self._last_manifest_mtime = manifest_path.stat().st_mtime
                self._last_model_mtime = model_path.stat().st_mtime
            except OSError:
                # hot reload stays disabled without mtimes
                self._logger.info("artifact_mtime_unavailable")
                self._last_manifest_mtime = None
                self._last_model_mtime = None
        self._logger.info(
            "model_loaded model_id=%s arch=%s layout=%s",
            manifest.model_id,
            manifest.arch,
            manifest.input_layout,
        )

    def reload_if_changed(self) -> bool:
        """Reload the active model if its manifest or weights changed on disk.

        Returns True if a reload occurred and the engine is still ready.
        """
        art = self._artifacts_dir
        if art is None:
            return False
        if self._last_manifest_mtime is None or self._last_model_mtime is None:
            return False
        try:
            m1 = (art / "manifest.json").stat().st_mtime
            m2 = (art / "model.pt").stat().st_mtime
        except OSError:
            self._logger.info("artifact_mtime_unavailable")
            return False
        if m1 <= self._last_manifest_mtime and m2 <= self._last_model_mtime:
            return False
        self.try_load_active()
        return self.ready

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)


def _make_pool(settings: Settings) -> ThreadPoolExecutor:
    if settings.app.threads == 0:
        size = min(8, os.cpu_count() or 1)
    else:
        size = settings.app.threads
    return ThreadPoolExecutor(max_workers=size, thread_name_prefix="predict")


def _expected_shape(man: ModelManifest) -> tuple[int, ...]:
    side = int(man.canvas_side)
    if man.input_layout == "nhwc":
        return (1, side, side, 1)
    if man.input_layout == "nchw":
        return (1, 1, side, side)
    return (1, side * side)


def _execute(model_obj: TorchModel, man: ModelManifest, x: Tensor) -> tuple[float, ...]:
    want = _expected_shape(man)
    if tuple(int(d) for d in x.shape) != want:
        raise ShapeError(f"model {man.model_id} expects {want}, got {tuple(x.shape)}")
    model_obj.eval()
    with torch.no_grad():
        logits = model_obj(x.to(dtype=torch.float32))
    if logits.ndim != 2 or int(logits.shape[0]) != 1:
        raise ShapeError(f"model returned shape {tuple(logits.shape)}, expected (1, n)")
    probs = torch.softmax(logits / float(man.temperature), dim=1)[0]
    return tuple(float(p) for p in probs.tolist())


def _mlp_hidden(sd: dict[str, Tensor]) -> int:
    w = sd.get("fc1.weight")
    if w is not None and w.ndim == 2:
        return int(w.shape[0])
    return _MLP_HIDDEN


if TYPE_CHECKING:

    def _build_model(
        arch: str, n_classes: int, side: int, hidden: int = _MLP_HIDDEN
    ) -> TorchModel: ...
else:

    def _build_model(
        arch: str, n_classes: int, side: int, hidden: int = _MLP_HIDDEN
    ) -> TorchModel:
        import torch.nn as nn

        if arch == "mlp":

            class _DigitMLP(nn.Module):
                def __init__(self) -> None:
                    super().__init__()
                    self.flatten = nn.Flatten()
                    self.fc1 = nn.Linear(side * side, hidden)
                    self.act = nn.ReLU()
                    self.fc2 = nn.Linear(hidden, n_classes)

                def forward(self, x: Tensor) -> Tensor:
                    return self.fc2(self.act(self.fc1(self.flatten(x))))

            return _DigitMLP()

        if arch == "resnet18":
            import importlib

            tv_models = importlib.import_module("torchvision.models")
            fn_obj = getattr(tv_models, "resnet18", None)
            if not callable(fn_obj):
                raise RuntimeError("torchvision.models.resnet18 is not callable")
            inner = fn_obj(weights=None, num_classes=int(n_classes))
            # 1-channel stem without the stride-2 pool, sized for small canvases
            inner.conv1 = nn.Conv2d(1, 64, kernel_size=3, stride=1, padding=1, bias=False)
            inner.maxpool = nn.Identity()
            return inner

        raise ValueError(f"unsupported arch {arch!r}")


if TYPE_CHECKING:

    def build_fresh_state_dict(arch: str, n_classes: int, side: int) -> dict[str, Tensor]: ...
else:

    def build_fresh_state_dict(arch: str, n_classes: int, side: int) -> dict[str, Tensor]:
        m = _build_model(arch=arch, n_classes=n_classes, side=side)
        out: dict[str, Tensor] = {}
        for k, v in m.state_dict().items():
            if isinstance(k, str) and torch.is_tensor(v):
                out[k] = v
            else:
                raise RuntimeError("invalid state dict entry from model")
        return out


if TYPE_CHECKING:

    def load_state_dict_file(path: Path) -> dict[str, Tensor]: ...
else:

    def load_state_dict_file(path: Path) -> dict[str, Tensor]:
        obj = torch.load(path.as_posix(), map_location=torch.device("cpu"), weights_only=True)
        sd_obj = obj["state_dict"] if isinstance(obj, dict) and "state_dict" in obj else obj
        if not isinstance(sd_obj, dict):
            raise ValueError("state dict file did not contain a dict")
        out: dict[str, Tensor] = {}
        for k, v in sd_obj.items():
            if isinstance(k, str) and torch.is_tensor(v):
                out[k] = v
            else:
                raise ValueError("invalid state dict entry")
        return out


def validate_state_dict(sd: dict[str, Tensor], arch: str, n_classes: int, side: int) -> None:
    if arch == "mlp":
        _validate_mlp(sd, n_classes, side)
        return
    if arch == "resnet18":
        _validate_resnet18(sd, n_classes)
        return
    raise ValueError(f"unsupported arch {arch!r}")


def _validate_mlp(sd: dict[str, Tensor], n_classes: int, side: int) -> None:
    w1 = sd.get("fc1.weight")
    w2 = sd.get("fc2.weight")
    b2 = sd.get("fc2.bias")
    if w1 is None or w2 is None or b2 is None:
        raise ValueError("missing dense layer weights in state dict")
    if w1.ndim != 2 or w2.ndim != 2 or b2.ndim != 1:
        raise ValueError("invalid dense tensor dimensions")
    if int(w1.shape[1]) != side * side:
        raise ValueError("input layer width does not match canvas")
    if int(w2.shape[1]) != int(w1.shape[0]):
        raise ValueError("hidden layer widths disagree")
    if int(w2.shape[0]) != n_classes or int(b2.shape[0]) != n_classes:
        raise ValueError("classifier head size does not match n_classes")


def _validate_resnet18(sd: dict[str, Tensor], n_classes: int) -> None:
    w = sd.get("fc.weight")
    b = sd.get("fc.bias")
    if w is None or b is None:
        raise ValueError("missing classifier weights in state dict")
    if w.ndim != 2 or b.ndim != 1:
        raise ValueError("invalid classifier tensor dimensions")
    if int(w.shape[0]) != n_classes or int(b.shape[0]) != n_classes:
        raise ValueError("classifier head size does not match n_classes")
    if int(w.shape[1]) != _RESNET_FEATURES:
        raise ValueError("classifier head in_features does not match backbone")
    conv1 = sd.get("conv1.weight")
    if conv1 is None or conv1.ndim != 4:
        raise ValueError("missing or invalid conv1.weight")
    if int(conv1.shape[0]) != 64 or int(conv1.shape[1]) != 1:
        raise ValueError("unexpected conv1 shape for 1-channel stem")
    if not all(any(k.startswith(f"layer{i}.") for k in sd) for i in range(1, 5)):
        raise ValueError("missing resnet layer blocks")
