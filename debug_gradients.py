"""
Gradient Debugging for RecurrentAttention
=========================================

Checks the cell's backward pass against central finite differences:
1. Glimpse parameters: time-summed gradient vs. d/dθ sum(gy * output),
   with the final step's composite input held fixed (location path is
   trained by REINFORCE, not backpropagated)
2. Location column: input gradient vs. d/dl sum(gy * output) at the final step
3. History bookkeeping: 2·rho snapshots after forward, 0 after backward
4. REINFORCE path: with a reward set, the action region receives gradient

Usage:
    python debug_gradients.py
    python debug_gradients.py --preset debug --log-dir runs/gradcheck
"""

import argparse
import copy
from typing import Dict

import numpy as np
import torch
from tqdm import tqdm

from ram import ATTENTION_PRESETS, DebugConfig, GLIMPSE_LAYOUT, build_attention
from ram.logging import MetricsLogger, create_logger
from ram.utils import tensor_stats


def finite_difference(fn, x: torch.Tensor, indices, eps: float) -> np.ndarray:
    """Central differences of scalar fn() w.r.t. x[indices] (x perturbed in place)."""
    grads = np.zeros(len(indices))
    for k, i in enumerate(indices):
        saved = x[i].item()
        x[i] = saved + eps
        plus = fn()
        x[i] = saved - eps
        minus = fn()
        x[i] = saved
        grads[k] = (plus - minus) / (2 * eps)
    return grads


def check_cell(preset: str, batch_size: int, config: DebugConfig) -> Dict[str, float]:
    """Run forward/backward on one preset and compare against finite differences."""
    attention_config = copy.deepcopy(ATTENTION_PRESETS[preset])
    attention_config.deterministic = False
    cell = build_attention(attention_config)

    input = torch.randn(attention_config.input_size, batch_size)
    output = cell.forward(input)
    gy = torch.randn_like(output)

    history_after_forward = len(cell.history)
    last = cell.history.latest('glimpse')
    glimpse_input = last.input.clone()

    # Reference module: same parameters, evaluated on the final step only
    glimpse = copy.deepcopy(cell.rnn_module)

    def loss() -> float:
        return (gy * glimpse.forward(glimpse_input)).sum().item()

    input_grad = cell.backward(input, gy)
    history_after_backward = len(cell.history)

    n_glimpse = cell.rnn_module.num_parameters
    analytic = cell.attention_gradient[:n_glimpse].numpy()
    numeric = finite_difference(loss, glimpse.parameters(), range(n_glimpse), config.eps)
    param_err = float(np.max(np.abs(analytic - numeric)))

    # Without a reward only the last step passes error back, so the summed
    # input gradient equals the final step's location delta
    loc_rows = cell.action_module.output.numel()
    location = glimpse_input[:, GLIMPSE_LAYOUT.location_col]  # view, perturbed in place
    numeric_loc = finite_difference(loss, location, range(loc_rows), config.eps)
    analytic_loc = input_grad.t().reshape(-1)[:loc_rows].numpy()
    loc_err = float(np.max(np.abs(analytic_loc - numeric_loc)))

    # REINFORCE: reward makes the action region non-zero
    cell.action_module.layers[-1].reward = 1.0
    cell.forward(input)
    cell.backward(input, gy)
    action_norm = tensor_stats(cell.buffers.region(1, 'accumulator'))['norm']

    return {
        'param_max_err': param_err,
        'location_max_err': loc_err,
        'history_after_forward': history_after_forward,
        'history_after_backward': history_after_backward,
        'expected_history': 2 * cell.rho,
        'action_grad_norm': action_norm,
    }


def print_check_summary(name: str, result: Dict[str, float], config: DebugConfig):
    """Print one scenario's results."""
    print(f"\n{'='*70}")
    print(f"{name}")
    print(f"{'='*70}")

    tol = config.atol
    for key in ('param_max_err', 'location_max_err'):
        flag = "✓" if result[key] < tol else "✗"
        print(f"  {flag} {key}: {result[key]:.2e} (tol {tol:.0e})")

    ok = result['history_after_forward'] == result['expected_history']
    print(f"  {'✓' if ok else '✗'} history after forward: "
          f"{result['history_after_forward']} (expected {result['expected_history']})")
    ok = result['history_after_backward'] == 0
    print(f"  {'✓' if ok else '✗'} history after backward: {result['history_after_backward']}")

    flag = "✓" if result['action_grad_norm'] > 0 else "✗"
    print(f"  {flag} action gradient with reward: norm={result['action_grad_norm']:.2e}")


def run_all_scenarios(config: DebugConfig, logger: MetricsLogger):
    print("="*70)
    print("RECURRENT ATTENTION - GRADIENT DEBUGGING")
    print("="*70)

    scenarios = [(p, b) for p in config.presets for b in config.batch_sizes]
    results = {}
    for step, (preset, batch_size) in enumerate(tqdm(scenarios, desc="Scenarios")):
        result = check_cell(preset, batch_size, config)
        results[(preset, batch_size)] = result
        logger.log_gradient_check(step, {
            'param_max_err': result['param_max_err'],
            'location_max_err': result['location_max_err'],
            'action_grad_norm': result['action_grad_norm'],
        })

    for (preset, batch_size), result in results.items():
        print_check_summary(f"preset={preset} batch={batch_size}", result, config)

    failed = [k for k, r in results.items()
              if r['param_max_err'] >= config.atol or r['location_max_err'] >= config.atol]
    print(f"\n{len(results) - len(failed)}/{len(results)} scenarios within tolerance")
    return results


def main():
    parser = argparse.ArgumentParser(description="Finite-difference check of RecurrentAttention")
    parser.add_argument("--preset", action="append", choices=sorted(ATTENTION_PRESETS),
                        help="Preset(s) to check (default: single_step, debug)")
    parser.add_argument("--log-dir", default=None, help="TensorBoard log directory")
    parser.add_argument("--seed", type=int, default=0)
    args = parser.parse_args()

    config = DebugConfig(seed=args.seed)
    if args.preset:
        config.presets = tuple(args.preset)

    torch.manual_seed(config.seed)
    torch.set_default_dtype(torch.float64)

    logger = create_logger(args.log_dir) if args.log_dir else MetricsLogger()
    run_all_scenarios(config, logger)
    logger.close()


if __name__ == "__main__":
    main()
