"""
Command-line posterior predictive check for OLRE Poisson models.

Fits the model to a CSV file, replicates the data under every policy,
prints the interval comparison and optionally runs exact leave-one-out
replication.

Usage:
    olre-check counts.csv --response y --covariate x --prob 0.9 --loo --workers 4
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np

from crossval import run_loo
from inference import ConvergenceError, ModelSpec, SamplerConfig, fit, psis_loo, summarize_pareto_k
from observations import ObservationTable, Standardizer
from replication import replicate_all
from replication.checks import compare_policies, olre_response_correlation, ppc_pvalues

logger = logging.getLogger("olre_check")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="olre-check",
        description="Posterior predictive checks with mixed replication for OLRE count models",
    )
    parser.add_argument("data", type=Path, help="CSV file with a count column and covariates")
    parser.add_argument("--response", required=True, help="Count column name")
    parser.add_argument(
        "--covariate", action="append", required=True, dest="covariates",
        help="Covariate column name (repeat for several)",
    )
    parser.add_argument("--no-olre", action="store_true", help="Fit a plain Poisson model")
    parser.add_argument("--draws", type=int, default=1000)
    parser.add_argument("--tune", type=int, default=1000)
    parser.add_argument("--chains", type=int, default=2)
    parser.add_argument("--target-accept", type=float, default=0.9)
    parser.add_argument("--max-retries", type=int, default=2)
    parser.add_argument("--prob", type=float, default=0.9, help="Interval mass (default 0.9)")
    parser.add_argument("--psis", action="store_true", help="Also report PSIS-LOO Pareto k")
    parser.add_argument("--loo", action="store_true", help="Run exact leave-one-out replication")
    parser.add_argument("--workers", type=int, default=1, help="Processes for --loo")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--output-dir", type=Path, default=None)
    parser.add_argument(
        "--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    return parser.parse_args(argv)


def _format_comparison(comparison: Dict[str, Dict], prob: float) -> str:
    lines = [
        f"{'policy':<14}{'outside':>9}{'coverage':>10}{'width':>9}  status",
        "-" * 52,
    ]
    for policy, row in comparison.items():
        status = "ok" if row["valid"] else "INVALID (leaks y)"
        lines.append(
            f"{policy:<14}{row['n_outside']:>9d}{row['coverage']:>10.2f}"
            f"{row['mean_width']:>9.1f}  {status}"
        )
    lines.append(f"({prob:.0%} equal-tailed intervals)")
    return "\n".join(lines)


def _to_json(value):
    """Convert numpy scalars and arrays for JSON; non-finite floats become None."""
    if isinstance(value, dict):
        return {str(key): _to_json(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json(item) for item in value]
    if isinstance(value, np.ndarray):
        return _to_json(value.tolist())
    if isinstance(value, (bool, np.bool_)):
        return bool(value)
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, (float, np.floating)):
        return float(value) if np.isfinite(value) else None
    return value


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    table = ObservationTable.from_csv(args.data, args.response, args.covariates)
    standardizer = Standardizer.fit(table.X)
    std_table = table.with_covariates(standardizer.transform(table.X))

    spec = ModelSpec(olre=not args.no_olre)
    config = SamplerConfig(
        draws=args.draws,
        tune=args.tune,
        chains=args.chains,
        target_accept=args.target_accept,
        max_retries=args.max_retries,
        log_likelihood=args.psis,
    )

    try:
        result = fit(spec, std_table, config, random_seed=args.seed)
    except ConvergenceError as exc:
        logger.error("Full-data fit failed: %s", exc)
        return 2

    replicates = replicate_all(result.draws, std_table.X, random_seed=args.seed)
    comparison = compare_policies(table.y, replicates, prob=args.prob)
    print(_format_comparison(comparison, args.prob))

    summary = {
        "n_obs": table.n_obs,
        "covariates": list(table.covariate_names),
        "standardization": standardizer.as_dict(table.covariate_names),
        "convergence": result.summary.report.as_dict(),
        "policies": comparison,
        "ppc_pvalues": {
            policy.value: ppc_pvalues(table.y, rep.y_rep) for policy, rep in replicates.items()
        },
        "olre_response_correlation": olre_response_correlation(
            result.draws, table.y, std_table.X
        ),
    }

    if args.psis:
        pareto = summarize_pareto_k(psis_loo(result.idata))
        summary["psis_pareto_k"] = pareto
        if pareto["bad"] + pareto["very_bad"]:
            logger.warning(
                "PSIS-LOO unreliable for %d observations (max k=%.2f)",
                pareto["bad"] + pareto["very_bad"],
                pareto["max_k"],
            )

    if args.loo:
        loo = run_loo(table, spec, config, workers=args.workers, random_seed=args.seed)
        summary["loo"] = loo.summary(table.y, prob=args.prob)
        print(
            f"\nleave-one-out: {summary['loo'].get('n_outside', 'n/a')} outside, "
            f"elpd={loo.elpd_loo:.2f}, failed folds={loo.failed}"
        )
        if args.output_dir is not None and loo.valid_mask.any():
            replicates_loo = loo.y_rep()
        else:
            replicates_loo = None
    else:
        replicates_loo = None

    if args.output_dir is not None:
        args.output_dir.mkdir(parents=True, exist_ok=True)
        for policy, rep in replicates.items():
            np.save(args.output_dir / f"y_rep_{policy.value}.npy", rep.y_rep)
        if replicates_loo is not None:
            np.save(args.output_dir / "y_rep_loo.npy", replicates_loo)
        with open(args.output_dir / "summary.json", "w") as f:
            json.dump(_to_json(summary), f, indent=2, allow_nan=False)
        logger.info("Wrote results to %s", args.output_dir)

    return 0


if __name__ == "__main__":
    sys.exit(main())
