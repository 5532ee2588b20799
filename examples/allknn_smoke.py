"""Smoke run comparing naive, single-tree and dual-tree all-k searches.

Builds one random problem, runs every strategy for the chosen sort policy
and metric, and reports timings, prune counts and agreement with the naive
baseline.
"""

from __future__ import annotations

import argparse
import logging
import time

import jax
import jax.numpy as jnp
import numpy as np

from arborsearch import (
    NeighborSearch,
    NeighborSearchConfig,
    available_metrics,
    available_sort_policies,
    get_metric,
    get_sort_policy,
)


def _make_problem(n_reference: int, n_query: int, dim: int, seed: int):
    key = jax.random.PRNGKey(seed)
    k1, k2 = jax.random.split(key)
    reference = jax.random.uniform(k1, (n_reference, dim), minval=-1.0, maxval=1.0)
    if n_query <= 0:
        return reference, None
    query = jax.random.uniform(k2, (n_query, dim), minval=-1.0, maxval=1.0)
    return reference, query


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--n-reference", type=int, default=2_000)
    parser.add_argument("--n-query", type=int, default=0, help="0 runs a self-search")
    parser.add_argument("--dim", type=int, default=3)
    parser.add_argument("--k", type=int, default=5)
    parser.add_argument("--leaf-size", type=int, default=20)
    parser.add_argument("--split-rule", choices=("midpoint", "median"), default="midpoint")
    parser.add_argument("--metric", choices=available_metrics(), default="squared_euclidean")
    parser.add_argument("--policy", choices=available_sort_policies(), default="nearest")
    parser.add_argument("--seed", type=int, default=0)
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    print("jax:", jax.__version__)
    print("device:", jax.devices()[0])
    print("config:", vars(args))

    reference, query = _make_problem(args.n_reference, args.n_query, args.dim, args.seed)
    config = NeighborSearchConfig(leaf_size=args.leaf_size, split_rule=args.split_rule)
    metric = get_metric(args.metric)
    policy = get_sort_policy(args.policy)

    baseline = None
    for mode in ("naive", "single", "dual"):
        start = time.perf_counter()
        with NeighborSearch(
            reference,
            query,
            naive=mode == "naive",
            single_mode=mode == "single",
            metric=metric,
            sort_policy=policy,
            config=config,
        ) as engine:
            result = engine.search(args.k)
            prunes = engine.num_prunes
        elapsed = time.perf_counter() - start

        if baseline is None:
            baseline = result
        print(
            f"[{mode}]",
            {
                "seconds": round(elapsed, 3),
                "prunes": prunes,
                "neighbors_match": bool(
                    np.array_equal(result.neighbors, baseline.neighbors)
                ),
                "max_abs_distance_error": float(
                    jnp.max(jnp.abs(result.distances - baseline.distances))
                ),
            },
        )


if __name__ == "__main__":
    main()
