"""dockopt input optimization: momentum SGD on the network input, thresholding, checkpointing.

The network weights stay fixed. The only optimized parameter is the input
blob named ``"data"`` (a 3D density grid), which is pushed along the
gradient of the network loss to synthesize or refine inputs that score well.
"""

from __future__ import annotations

import argparse
import dataclasses
import enum
import json
import logging
import math
import signal
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

import h5py
import torch

from dockopt.data import (
    DEFAULT_DIMENSION,
    DEFAULT_LIG_TYPES,
    DEFAULT_REC_TYPES,
    DEFAULT_RESOLUTION,
    GridSource,
    GridSpec,
    make_synthetic_grid,
)
from dockopt.net import POOL_AVE, POOL_MAX, GridNetConfig, NetLayer, ScoringNet, build_grid_net

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
logger = logging.getLogger(__name__)

INPUT_BLOB = "data"


class MissingInputBlobError(LookupError):
    """The network has no blob named ``"data"``."""


class UnknownModeError(ValueError):
    """Execution mode is neither cpu nor gpu."""


class BackendUnavailableError(RuntimeError):
    """GPU execution requested but CUDA is not available."""


# ============================================================================
# Solver Configuration
# ============================================================================

@dataclass
class SolverConfig:
    """Input-optimization solver configuration."""
    # Learning rate
    base_lr: float = 0.01
    lr_policy: str = "fixed"  # fixed, step, exp, inv, multistep, poly, sigmoid, cosine
    gamma: float = 0.1
    power: float = 1.0
    stepsize: int = 1000
    stepvalue: list[int] = field(default_factory=list)
    max_iter: int = 1000

    # Update
    momentum: float = 0.9
    clip_gradients: float = -1.0  # negative disables
    iter_size: int = 1

    # Reporting
    display: int = 0
    average_loss: int = 1
    debug_info: bool = False

    # Testing
    test_interval: int = 0
    test_iter: int = 1
    test_initialization: bool = True

    # Checkpointing
    snapshot: int = 0
    snapshot_prefix: str = "snapshots/inputopt"
    snapshot_format: str = "binary"  # "binary" or "hdf5"
    snapshot_after_train: bool = True

    # Thresholding: receptor and ligand channels are left alone
    threshold_update: bool = False
    n_rec_types: int = DEFAULT_REC_TYPES
    n_lig_types: int = DEFAULT_LIG_TYPES
    grid_dimension: float = DEFAULT_DIMENSION
    grid_resolution: float = DEFAULT_RESOLUTION

    # Execution
    mode: str = "cpu"  # "cpu" or "gpu"

    @property
    def grid(self) -> GridSpec:
        return GridSpec(
            n_rec_types=self.n_rec_types,
            n_lig_types=self.n_lig_types,
            dimension=self.grid_dimension,
            resolution=self.grid_resolution,
        )

    @property
    def protected_size(self) -> int:
        return self.grid.protected_size

    @classmethod
    def from_file(cls, path: str | Path) -> "SolverConfig":
        """Load from a JSON or YAML file; unknown keys are an error."""
        path = Path(path)
        with open(path, "r") as f:
            if path.suffix in (".yaml", ".yml"):
                import yaml
                data = yaml.safe_load(f) or {}
            else:
                data = json.load(f)
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown solver config keys in {path}: {unknown}")
        return cls(**data)


# ============================================================================
# Learning Rate Schedule
# ============================================================================

def get_lr(iteration: int, config: SolverConfig, current_step: int = 0) -> tuple[float, int]:
    """Learning rate at ``iteration`` and the (possibly advanced) schedule step."""
    policy = config.lr_policy
    base_lr = config.base_lr
    if policy == "fixed":
        rate = base_lr
    elif policy == "step":
        current_step = iteration // config.stepsize
        rate = base_lr * config.gamma ** current_step
    elif policy == "exp":
        rate = base_lr * config.gamma ** iteration
    elif policy == "inv":
        rate = base_lr * (1.0 + config.gamma * iteration) ** (-config.power)
    elif policy == "multistep":
        while current_step < len(config.stepvalue) and iteration >= config.stepvalue[current_step]:
            current_step += 1
            logger.info(f"MultiStep Status: Iteration {iteration}, step = {current_step}")
        rate = base_lr * config.gamma ** current_step
    elif policy == "poly":
        rate = base_lr * (1.0 - iteration / config.max_iter) ** config.power
    elif policy == "sigmoid":
        rate = base_lr / (1.0 + math.exp(-config.gamma * (iteration - config.stepsize)))
    elif policy == "cosine":
        progress = min(iteration / max(1, config.max_iter), 1.0)
        rate = base_lr * 0.5 * (1.0 + math.cos(math.pi * progress))
    else:
        raise ValueError(f"Unknown learning rate policy: {policy}")
    return rate, current_step


# ============================================================================
# Requested actions
# ============================================================================

class SolverAction(enum.Enum):
    NONE = "none"
    SNAPSHOT = "snapshot"
    STOP = "stop"


class SignalHandler:
    """Turns SIGINT/SIGHUP into solver actions, polled once per iteration.

    Use as a context manager around ``solve`` and pass ``check_for_signals``
    as the solver's ``action_request_function``.
    """

    def __init__(
        self,
        sigint_effect: SolverAction = SolverAction.STOP,
        sighup_effect: SolverAction = SolverAction.SNAPSHOT,
    ):
        self.sigint_effect = sigint_effect
        self.sighup_effect = sighup_effect
        self._got_sigint = False
        self._got_sighup = False
        self._previous: dict[int, object] = {}

    def _handle(self, signum, frame):
        if signum == signal.SIGINT:
            self._got_sigint = True
        else:
            self._got_sighup = True

    def __enter__(self) -> "SignalHandler":
        signums = [signal.SIGINT]
        if hasattr(signal, "SIGHUP"):
            signums.append(signal.SIGHUP)
        for signum in signums:
            self._previous[signum] = signal.signal(signum, self._handle)
        return self

    def __exit__(self, *exc) -> None:
        for signum, handler in self._previous.items():
            signal.signal(signum, handler)
        self._previous.clear()

    def check_for_signals(self) -> SolverAction:
        if self._got_sigint:
            self._got_sigint = False
            return self.sigint_effect
        if self._got_sighup:
            self._got_sighup = False
            return self.sighup_effect
        return SolverAction.NONE


class SolverCallback:
    """Per-iteration hooks; override what you need."""

    def on_start(self) -> None:
        pass

    def on_gradients_ready(self) -> None:
        pass


# ============================================================================
# Execution backends
# ============================================================================

class UpdateBackend:
    """Where the element-wise update work runs."""
    name = "base"
    device = torch.device("cpu")

    def compute_update(
        self,
        grad: torch.Tensor,
        history: torch.Tensor,
        update: torch.Tensor,
        momentum: float,
        rate: float,
    ) -> None:
        """history = momentum * history + rate * grad, written back into grad."""
        raise NotImplementedError

    def threshold_(self, tensor: torch.Tensor, protected_size: int) -> None:
        """Clamp negatives to zero for every element past ``protected_size``."""
        raise NotImplementedError


class CpuBackend(UpdateBackend):
    name = "cpu"
    device = torch.device("cpu")

    def compute_update(self, grad, history, update, momentum, rate):
        update.copy_(grad).mul_(rate).add_(history, alpha=momentum)
        history.copy_(update)
        grad.copy_(update)

    def threshold_(self, tensor, protected_size):
        flat = tensor.detach().view(-1)
        flat[protected_size:].clamp_(min=0)


class CudaBackend(UpdateBackend):
    name = "gpu"

    def __init__(self):
        if not torch.cuda.is_available():
            raise BackendUnavailableError("GPU mode requested but CUDA is not available")
        self.device = torch.device("cuda", torch.cuda.current_device())

    def compute_update(self, grad, history, update, momentum, rate):
        history.mul_(momentum).add_(grad, alpha=rate)
        grad.copy_(history)

    def threshold_(self, tensor, protected_size):
        flat = tensor.detach().view(-1)
        torch.relu_(flat[protected_size:])


def make_backend(mode: str) -> UpdateBackend:
    if mode == "cpu":
        return CpuBackend()
    if mode in ("gpu", "cuda"):
        return CudaBackend()
    raise UnknownModeError(f"Unknown execution mode: {mode}")


# ============================================================================
# Solver
# ============================================================================

class InputOptSolver:
    """Momentum SGD whose only parameter is the network's ``"data"`` blob."""

    def __init__(
        self,
        config: SolverConfig,
        net: ScoringNet,
        test_nets: list[ScoringNet] | None = None,
        backend: UpdateBackend | None = None,
        callbacks: list[SolverCallback] | None = None,
        action_request_function: Callable[[], SolverAction] | None = None,
    ):
        self.config = config
        self.net = net
        self.test_nets = list(test_nets or [])
        self.backend = backend or make_backend(config.mode)
        self.callbacks = list(callbacks or [])
        self.action_request_function = action_request_function

        self.iter = 0
        self.current_step = 0
        self.losses: list[float] = []
        self.smoothed_loss = 0.0
        self.requested_early_exit = False
        self.iterations_last = 0
        self._timer = time.time()

        self.presolve()

    def presolve(self) -> None:
        """Make the data blob the sole gradient leaf and allocate momentum state."""
        if INPUT_BLOB not in self.net.blobs:
            raise MissingInputBlobError("Net doesn't have a data blob")
        device = self.backend.device
        for net in [self.net] + self.test_nets:
            net.to(device)
            net.blobs = {name: blob.detach().to(device) for name, blob in net.blobs.items()}

        blob = self.net.blobs[INPUT_BLOB].detach().to(device).contiguous()
        blob.requires_grad_(True)
        self.net.blobs[INPUT_BLOB] = blob
        self.input_blob = blob
        self.history = torch.zeros_like(blob)
        self.update = torch.zeros_like(blob)

        if self.config.threshold_update:
            protected = self.config.protected_size
            if protected >= blob.numel():
                logger.warning(
                    f"Protected prefix ({protected}) covers the whole data blob "
                    f"({blob.numel()} values); thresholding will not change anything"
                )
            elif blob.dim() == 5 and blob.shape[1] < self.config.n_rec_types + self.config.n_lig_types:
                logger.warning(
                    f"Data blob has {blob.shape[1]} channels, fewer than the "
                    f"{self.config.n_rec_types} receptor + {self.config.n_lig_types} ligand channels assumed "
                    f"by thresholding"
                )
        logger.info(f"Optimizing input blob '{INPUT_BLOB}' {tuple(blob.shape)} on {self.backend.name}")

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def solve(self, resume_file: str | Path | None = None) -> None:
        cfg = self.config
        logger.info(f"Solving input optimization, learning rate policy: {cfg.lr_policy}")
        self.requested_early_exit = False
        if resume_file:
            logger.info(f"Restoring previous solver status from {resume_file}")
            self.restore(resume_file)

        self.step(cfg.max_iter - self.iter)

        if cfg.snapshot_after_train and (not cfg.snapshot or self.iter % cfg.snapshot != 0):
            self.snapshot()
        if self.requested_early_exit:
            logger.info("Optimization stopped early.")
            return

        if cfg.display and self.iter % cfg.display == 0:
            with torch.no_grad():
                loss = self.net.forward_from(1)
            logger.info(f"Iteration {self.iter}, loss = {loss:.6g}")
        if cfg.test_interval and self.iter % cfg.test_interval == 0:
            self.test_all()
        logger.info("Optimization Done.")

    def step(self, iters: int) -> None:
        cfg = self.config
        start_iter = self.iter
        stop_iter = self.iter + iters
        self.losses.clear()
        self.smoothed_loss = 0.0
        self._timer = time.time()
        self.iterations_last = self.iter

        if self.iter == 0:
            self.net.forward_from_to(0, 0)

        while self.iter < stop_iter:
            self.net.clear_param_diffs()
            if self.input_blob.grad is not None:
                self.input_blob.grad.zero_()

            if (cfg.test_interval and self.iter % cfg.test_interval == 0
                    and (self.iter > 0 or cfg.test_initialization)):
                self.test_all()
                if self.requested_early_exit:
                    break

            for callback in self.callbacks:
                callback.on_start()
            display = bool(cfg.display) and self.iter % cfg.display == 0
            self.net.set_debug_info(display and cfg.debug_info)

            # accumulate the loss and gradient
            loss = 0.0
            for _ in range(cfg.iter_size):
                loss += self.net.forward_from(1)
                pool = self.toggle_max_to_ave()
                self.net.backward()
                if pool is not None:
                    pool.pool = POOL_MAX
            loss /= cfg.iter_size

            self.update_smoothed_loss(loss, start_iter, cfg.average_loss)
            if display:
                self._display()

            for callback in self.callbacks:
                callback.on_gradients_ready()
            self.apply_update()

            # iter counts the number of updates applied to the input
            self.iter += 1

            request = self.get_requested_action()
            if (cfg.snapshot and self.iter % cfg.snapshot == 0) or request == SolverAction.SNAPSHOT:
                self.snapshot()
            if request == SolverAction.STOP:
                self.requested_early_exit = True
                break

    def get_requested_action(self) -> SolverAction:
        if self.action_request_function is None:
            return SolverAction.NONE
        return self.action_request_function()

    def toggle_max_to_ave(self) -> NetLayer | None:
        """Switch the first pooling layer from MAX to AVE for the backward pass.

        The search starts after the input layer and gives up at the first
        convolution or inner product. Returns the layer to switch back, or
        None when nothing was changed.
        """
        pool = None
        for layer in list(self.net.layers)[1:]:
            if layer.has_pool_method():
                pool = layer
                break
            if layer.layer_type in ("Convolution", "InnerProduct"):
                break
        if pool is not None:
            if pool.pool == POOL_MAX:
                pool.pool = POOL_AVE
            else:
                pool = None
        return pool

    def update_smoothed_loss(self, loss: float, start_iter: int, average_loss: int) -> None:
        if len(self.losses) < average_loss:
            self.losses.append(loss)
            size = len(self.losses)
            self.smoothed_loss = (self.smoothed_loss * (size - 1) + loss) / size
        else:
            idx = (self.iter - start_iter) % average_loss
            self.smoothed_loss += (loss - self.losses[idx]) / average_loss
            self.losses[idx] = loss

    def _display(self) -> None:
        cfg = self.config
        lapse = time.time() - self._timer
        per_s = (self.iter - self.iterations_last) / (lapse if lapse else 1)
        logger.info(
            f"Iteration {self.iter} ({per_s:.4g} iter/s, {lapse:.4g}s/{cfg.display} iters), "
            f"loss = {self.smoothed_loss:.6g}"
        )
        self._timer = time.time()
        self.iterations_last = self.iter

        loss_weights = self.net.blob_loss_weights
        score_index = 0
        for name, blob in zip(self.net.output_names, self.net.output_blobs()):
            loss_weight = loss_weights.get(name, 0.0)
            for value in blob.detach().reshape(-1).tolist():
                loss_msg = f" (* {loss_weight:g} = {loss_weight * value:.6g} loss)" if loss_weight else ""
                logger.info(f"    Train net output #{score_index}: {name} = {value:.6g}{loss_msg}")
                score_index += 1

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def get_learning_rate(self) -> float:
        rate, self.current_step = get_lr(self.iter, self.config, self.current_step)
        return rate

    def apply_update(self) -> None:
        cfg = self.config
        rate = self.get_learning_rate()
        if cfg.display and self.iter % cfg.display == 0:
            logger.info(f"Iteration {self.iter}, lr = {rate:g}")
        if self.input_blob.grad is None:
            self.input_blob.grad = torch.zeros_like(self.input_blob)
        self.clip_gradients()
        self.compute_update_value(rate)
        with torch.no_grad():
            self.input_blob.sub_(self.input_blob.grad)
        if cfg.threshold_update:
            self.backend.threshold_(self.input_blob, cfg.protected_size)

    def clip_gradients(self) -> None:
        clip_gradients = self.config.clip_gradients
        if clip_gradients < 0:
            return
        grad = self.input_blob.grad
        l2norm_diff = grad.norm().item()
        if l2norm_diff > clip_gradients:
            scale_factor = clip_gradients / l2norm_diff
            logger.info(
                f"Gradient clipping: scaling down gradients (L2 norm {l2norm_diff:g} > "
                f"{clip_gradients:g}) by scale factor {scale_factor:g}"
            )
            grad.mul_(scale_factor)

    def compute_update_value(self, rate: float) -> None:
        self.backend.compute_update(
            self.input_blob.grad, self.history, self.update, self.config.momentum, rate
        )

    # ------------------------------------------------------------------
    # Testing
    # ------------------------------------------------------------------

    def test_all(self) -> None:
        for test_net_id in range(len(self.test_nets)):
            if self.requested_early_exit:
                break
            self.test(test_net_id)

    def test(self, test_net_id: int = 0) -> None:
        logger.info(f"Iteration {self.iter}, Testing net (#{test_net_id})")
        test_net = self.test_nets[test_net_id]
        scores: dict[str, torch.Tensor] = {}
        loss = 0.0
        with torch.no_grad():
            for _ in range(self.config.test_iter):
                request = self.get_requested_action()
                if request == SolverAction.SNAPSHOT:
                    self.snapshot()
                elif request == SolverAction.STOP:
                    self.requested_early_exit = True
                    break
                loss += test_net.forward()
                for name, blob in zip(test_net.output_names, test_net.output_blobs()):
                    value = blob.detach().reshape(-1).cpu()
                    scores[name] = scores[name] + value if name in scores else value.clone()
        if self.requested_early_exit:
            logger.info("Test interrupted.")
            return

        n = self.config.test_iter
        logger.info(f"Test loss: {loss / n:.6g}")
        loss_weights = test_net.blob_loss_weights
        score_index = 0
        for name, total in scores.items():
            loss_weight = loss_weights.get(name, 0.0)
            for value in (total / n).tolist():
                loss_msg = f" (* {loss_weight:g} = {loss_weight * value:.6g} loss)" if loss_weight else ""
                logger.info(f"    Test net output #{score_index}: {name} = {value:.6g}{loss_msg}")
                score_index += 1

    # ------------------------------------------------------------------
    # Checkpoint
    # ------------------------------------------------------------------

    def snapshot_filename(self, extension: str) -> Path:
        return Path(f"{self.config.snapshot_prefix}_iter_{self.iter}{extension}")

    def snapshot(self) -> Path:
        """Save net weights and solver state (including the data blob); return the state path."""
        model_filename = self.snapshot_filename(".pt")
        model_filename.parent.mkdir(parents=True, exist_ok=True)
        torch.save(self.net.state_dict(), model_filename)
        logger.info(f"Snapshotting to {model_filename}")

        fmt = self.config.snapshot_format
        if fmt == "binary":
            return self.snapshot_solver_state_binary(str(model_filename))
        if fmt == "hdf5":
            return self.snapshot_solver_state_hdf5(str(model_filename))
        raise ValueError(f"Unknown snapshot format: {fmt}")

    def snapshot_solver_state_binary(self, model_filename: str) -> Path:
        path = self.snapshot_filename(".solverstate")
        state = {
            "iter": self.iter,
            "learned_net": model_filename,
            "current_step": self.current_step,
            "history": [self.history.detach().cpu().clone()],
            "datablob": self.input_blob.detach().cpu().clone(),
        }
        logger.info(f"Snapshotting solver state to binary file {path}")
        torch.save(state, path)
        return path

    def snapshot_solver_state_hdf5(self, model_filename: str) -> Path:
        path = self.snapshot_filename(".solverstate.h5")
        logger.info(f"Snapshotting solver state to HDF5 file {path}")
        with h5py.File(path, "w") as f:
            f.create_dataset("iter", data=self.iter)
            f.create_dataset("learned_net", data=model_filename)
            f.create_dataset("current_step", data=self.current_step)
            history = f.create_group("history")
            for i, blob in enumerate([self.history]):
                history.create_dataset(str(i), data=blob.detach().cpu().numpy())
            inputs = f.create_group("inputblob")
            inputs.create_dataset(INPUT_BLOB, data=self.input_blob.detach().cpu().numpy())
        return path

    def restore(self, state_file: str | Path) -> None:
        state_file = str(state_file)
        if state_file.endswith(".h5"):
            self.restore_solver_state_from_hdf5(state_file)
        else:
            self.restore_solver_state_from_binary(state_file)
        logger.info(f"Restored solver state from {state_file} at iteration {self.iter}")

    def restore_solver_state_from_binary(self, state_file: str) -> None:
        state = torch.load(state_file, map_location="cpu", weights_only=True)
        self._load_state(
            state["iter"], state.get("learned_net", ""), state.get("current_step", 0),
            state["history"], state["datablob"],
        )

    def restore_solver_state_from_hdf5(self, state_file: str) -> None:
        with h5py.File(state_file, "r") as f:
            learned_net = f["learned_net"].asstr()[()] if "learned_net" in f else ""
            history = [torch.from_numpy(f["history"][k][()]) for k in sorted(f["history"], key=int)]
            datablob = torch.from_numpy(f["inputblob"][INPUT_BLOB][()])
            self._load_state(
                int(f["iter"][()]), learned_net, int(f["current_step"][()]), history, datablob,
            )

    def _load_state(
        self,
        iteration: int,
        learned_net: str,
        current_step: int,
        history: list[torch.Tensor],
        datablob: torch.Tensor,
    ) -> None:
        if len(history) != 1:
            raise ValueError(f"Incorrect length of history blobs: {len(history)}")
        for name, saved, live in (("history", history[0], self.history),
                                  (INPUT_BLOB, datablob, self.input_blob)):
            if tuple(saved.shape) != tuple(live.shape):
                raise ValueError(
                    f"Saved {name} shape {tuple(saved.shape)} does not match {tuple(live.shape)}"
                )
        if learned_net and Path(learned_net).exists():
            self.net.load_state_dict(
                torch.load(learned_net, map_location=self.backend.device, weights_only=True)
            )
        self.iter = iteration
        self.current_step = current_step
        with torch.no_grad():
            self.history.copy_(history[0])
            self.input_blob.copy_(datablob)


# ============================================================================
# Entry Point
# ============================================================================

def main():
    """Input optimization entry point."""
    parser = argparse.ArgumentParser(description="dockopt input-grid optimization")
    parser.add_argument("--config", type=str, default=None, help="Path to solver config (JSON or YAML)")
    parser.add_argument("--weights", type=str, default=None, help="Path to scoring net state_dict (.pt)")
    parser.add_argument("--resume", type=str, default=None, help="Solver state to resume from")
    parser.add_argument("--grid", type=str, default=None, help="Input grid tensor (.pt) to optimize")
    parser.add_argument("--synthetic", action="store_true", help="Start from a synthetic grid")
    parser.add_argument("--extra-types", type=int, default=0, help="Channels after receptor/ligand types")
    parser.add_argument("--output", type=str, default="optimized_grid.pt", help="Where to write the optimized grid")
    parser.add_argument("--max-iter", type=int, default=None, help="Maximum iterations")
    parser.add_argument("--base-lr", type=float, default=None, help="Base learning rate")
    parser.add_argument("--momentum", type=float, default=None, help="Momentum coefficient")
    parser.add_argument("--clip-gradients", type=float, default=None, help="Gradient L2 ceiling (<0 disables)")
    parser.add_argument("--threshold-update", action="store_true", default=None, help="Clamp non-protected values at zero")
    parser.add_argument("--snapshot", type=int, default=None, help="Snapshot every N iterations")
    parser.add_argument("--snapshot-prefix", type=str, default=None, help="Snapshot path prefix")
    parser.add_argument("--snapshot-format", choices=["binary", "hdf5"], default=None, help="Solver state format")
    parser.add_argument("--display", type=int, default=None, help="Log every N iterations")
    parser.add_argument("--mode", choices=["cpu", "gpu"], default=None, help="Execution backend")
    args = parser.parse_args()

    if args.grid is None and not args.synthetic:
        parser.error("Must specify either --grid or --synthetic")

    config = SolverConfig.from_file(args.config) if args.config else SolverConfig()
    overrides = {
        name: getattr(args, name)
        for name in ["max_iter", "base_lr", "momentum", "clip_gradients", "threshold_update", "snapshot",
                     "snapshot_prefix", "snapshot_format", "display", "mode"]
        if getattr(args, name) is not None
    }
    config = dataclasses.replace(config, **overrides)

    if args.grid:
        source = GridSource.from_file(args.grid)
        n_extra = source.shape[1] - config.n_rec_types - config.n_lig_types
        if n_extra < 0:
            logger.error(f"Grid {args.grid} has {source.shape[1]} channels, fewer than the configured "
                         f"receptor and ligand types")
            return
        grid_spec = dataclasses.replace(config.grid, n_extra_types=n_extra)
    else:
        grid_spec = dataclasses.replace(config.grid, n_extra_types=args.extra_types)
        source = GridSource(make_synthetic_grid(grid_spec))
    model = build_grid_net(GridNetConfig(grid=grid_spec), source)
    if args.weights:
        model.load_state_dict(torch.load(args.weights, map_location="cpu", weights_only=True))
        logger.info(f"Loaded scoring net weights from {args.weights}")
    logger.info(f"Model parameters: {sum(p.numel() for p in model.parameters()):,}")

    with SignalHandler() as handler:
        solver = InputOptSolver(config, model, action_request_function=handler.check_for_signals)
        solver.solve(args.resume)

    torch.save(solver.input_blob.detach().cpu(), args.output)
    logger.info(f"Optimized grid written to {args.output}")


if __name__ == "__main__":
    main()
