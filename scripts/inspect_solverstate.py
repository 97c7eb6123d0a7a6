#!/usr/bin/env python3
"""Summarize an input-optimization solver state (binary or HDF5) and optionally diff two of them.

Usage:
    python scripts/inspect_solverstate.py snapshots/inputopt_iter_100.solverstate
    python scripts/inspect_solverstate.py a.solverstate b.solverstate.h5

Programmatic:
    from scripts.inspect_solverstate import load_solver_state
    state = load_solver_state("snapshots/inputopt_iter_100.solverstate.h5")
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

import h5py
import torch


def load_solver_state(path: str | Path) -> dict:
    """Read either state format into the layout used by the binary one."""
    path = str(path)
    if not path.endswith(".h5"):
        return torch.load(path, map_location="cpu", weights_only=True)
    with h5py.File(path, "r") as f:
        return {
            "iter": int(f["iter"][()]),
            "learned_net": f["learned_net"].asstr()[()] if "learned_net" in f else "",
            "current_step": int(f["current_step"][()]),
            "history": [torch.from_numpy(f["history"][k][()]) for k in sorted(f["history"], key=int)],
            "datablob": torch.from_numpy(f["inputblob"]["data"][()]),
        }


def summarize(state: dict) -> list[str]:
    data = state["datablob"]
    lines = [
        f"iter:         {state['iter']}",
        f"current_step: {state['current_step']}",
        f"learned_net:  {state['learned_net'] or '-'}",
        f"datablob:     shape={tuple(data.shape)} dtype={data.dtype} "
        f"min={data.min().item():.6g} max={data.max().item():.6g} "
        f"negative={int((data < 0).sum().item())}",
    ]
    for i, h in enumerate(state["history"]):
        lines.append(f"history[{i}]:   shape={tuple(h.shape)} L2={h.norm().item():.6g}")
    return lines


def compare(a: dict, b: dict) -> list[str]:
    lines = []
    for key in ("iter", "current_step"):
        if a[key] != b[key]:
            lines.append(f"{key} differs: {a[key]} vs {b[key]}")
    for name, x, y in [("datablob", a["datablob"], b["datablob"])] + [
        (f"history[{i}]", hx, hy) for i, (hx, hy) in enumerate(zip(a["history"], b["history"]))
    ]:
        if x.shape != y.shape:
            lines.append(f"{name} shape differs: {tuple(x.shape)} vs {tuple(y.shape)}")
        elif not torch.equal(x, y):
            lines.append(f"{name} max abs diff: {(x - y).abs().max().item():.6g}")
    return lines or ["states are identical"]


def main():
    parser = argparse.ArgumentParser(description="Inspect input-optimization solver states")
    parser.add_argument("state", type=str, help="Solver state (.solverstate or .solverstate.h5)")
    parser.add_argument("other", type=str, nargs="?", default=None, help="Second state to compare against")
    args = parser.parse_args()

    state = load_solver_state(args.state)
    print("\n".join(summarize(state)))
    if args.other:
        print(f"--- compared with {args.other}")
        diffs = compare(state, load_solver_state(args.other))
        print("\n".join(diffs))
        if diffs != ["states are identical"]:
            sys.exit(1)


if __name__ == "__main__":
    main()
