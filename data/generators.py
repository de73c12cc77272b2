"""Synthetic genotype / phenotype generators for sparse GLM experiments."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from data.preprocess import genotype_moments
from ihtcv.models.families import get_family

__all__ = [
    "GeneratorError",
    "SyntheticConfig",
    "SyntheticDataset",
    "make_groups",
    "group_labels",
    "simulate_genotypes",
    "simulate_response",
    "generate_synthetic",
    "synthetic_config_from_dict",
]


class GeneratorError(ValueError):
    """Raised when an invalid synthetic configuration is provided."""


@dataclass
class SyntheticConfig:
    """Container capturing all parameters for synthetic scenario generation."""

    n: int
    p: int
    k: int = 5
    design: str = "genotype"
    maf_range: Tuple[float, float] = (0.05, 0.5)
    missing_rate: float = 0.0
    correlation: Mapping[str, object] = field(default_factory=dict)
    effect: Mapping[str, object] = field(default_factory=dict)
    family: str = "normal"
    link: Optional[str] = None
    noise_sigma: float = 1.0
    nb_r: float = 10.0
    intercept: float = 0.0
    n_covariates: int = 0
    covariate_scale: float = 0.2
    G: Optional[int] = None
    group_sizes: Union[str, Sequence[int], None] = None
    seed: Optional[int] = None
    name: Optional[str] = None


@dataclass
class SyntheticDataset:
    """Generated dataset together with the generating coefficients."""

    X: np.ndarray
    y: np.ndarray
    z: np.ndarray
    beta: np.ndarray
    c: np.ndarray
    groups: List[List[int]]
    info: Dict[str, object] = field(default_factory=dict)

    @property
    def group_labels(self) -> np.ndarray:
        return group_labels(self.groups, self.X.shape[1])


def make_groups(p: int, G: Optional[int], group_sizes: Union[str, Sequence[int], None]) -> List[List[int]]:
    """Construct contiguous predictor groups (one group per predictor when unset)."""

    if group_sizes is None:
        return [[j] for j in range(p)]

    if isinstance(group_sizes, str):
        if group_sizes.lower() != "equal":
            raise GeneratorError(f"Unsupported group_sizes specifier '{group_sizes}'.")
        if G is None or G <= 0:
            raise GeneratorError("Equal group sizing requires a positive G.")
        base = p // G
        remainder = p % G
        sizes = [base + (1 if g < remainder else 0) for g in range(G)]
    else:
        sizes = [int(s) for s in group_sizes]
        if any(s <= 0 for s in sizes):
            raise GeneratorError("Group sizes must all be positive integers.")
        if sum(sizes) != p:
            raise GeneratorError("Sum of group sizes must equal p.")
        if G is not None and len(sizes) != G:
            raise GeneratorError("Length of group_sizes does not match G.")

    groups: List[List[int]] = []
    cursor = 0
    for size in sizes:
        groups.append(list(range(cursor, cursor + size)))
        cursor += size
    return groups


def group_labels(groups: Sequence[Sequence[int]], p: int) -> np.ndarray:
    """Flatten a list of member lists into a per-predictor label vector (1-based)."""
    labels = np.zeros(p, dtype=int)
    for gid, members in enumerate(groups, start=1):
        labels[np.asarray(members, dtype=int)] = gid
    if np.any(labels == 0):
        raise GeneratorError("Some predictors lack a group assignment.")
    return labels


def simulate_genotypes(
    rng: np.random.Generator,
    n: int,
    p: int,
    *,
    maf_range: Tuple[float, float] = (0.05, 0.5),
    missing_rate: float = 0.0,
    missing_code: int = -1,
) -> Tuple[np.ndarray, np.ndarray]:
    """Additive 0/1/2 genotypes (int8) under Hardy-Weinberg equilibrium."""

    low, high = (float(v) for v in maf_range)
    if not (0.0 < low <= high <= 0.5):
        raise GeneratorError("maf_range must satisfy 0 < low <= high <= 0.5.")
    if not (0.0 <= missing_rate < 1.0):
        raise GeneratorError("missing_rate must lie in [0, 1).")
    maf = rng.uniform(low, high, size=p)
    G = rng.binomial(2, maf, size=(n, p)).astype(np.int8)
    if missing_rate > 0.0:
        G[rng.random((n, p)) < missing_rate] = missing_code
    return G, maf


def _draw_dense(rng: np.random.Generator, n: int, p: int, corr_cfg: Mapping[str, object]) -> np.ndarray:
    corr_type = str(corr_cfg.get("type", "independent")).lower()
    rho = float(corr_cfg.get("rho", 0.0))

    if corr_type in {"independent", "none"} or abs(rho) < 1e-12:
        return rng.standard_normal((n, p))

    if corr_type == "ar1":
        if not (-0.999 <= rho <= 0.999):
            raise GeneratorError("AR1 correlation requires rho in [-0.999, 0.999].")
        eps = rng.standard_normal((n, p))
        design = np.empty((n, p), dtype=float)
        design[:, 0] = eps[:, 0]
        scale = math.sqrt(max(1.0 - rho * rho, 1e-8))
        for j in range(1, p):
            design[:, j] = rho * design[:, j - 1] + scale * eps[:, j]
        return design

    if corr_type == "block":
        block = int(corr_cfg.get("block_size", 10))
        if block <= 0 or not (0.0 <= rho < 1.0):
            raise GeneratorError("Block correlation requires block_size > 0 and rho in [0, 1).")
        design = np.empty((n, p), dtype=float)
        for start in range(0, p, block):
            end = min(start + block, p)
            shared = rng.standard_normal((n, 1))
            design[:, start:end] = math.sqrt(rho) * shared + math.sqrt(1.0 - rho) * rng.standard_normal((n, end - start))
        return design

    raise GeneratorError(f"Unsupported correlation type '{corr_type}'.")


def _draw_effects(rng: np.random.Generator, count: int, effect_cfg: Mapping[str, object]) -> np.ndarray:
    distribution = str(effect_cfg.get("distribution", "normal")).lower()
    if distribution in {"constant", "fixed"}:
        values = np.full(count, abs(float(effect_cfg.get("value", 0.5))))
    elif distribution in {"normal", "gaussian"}:
        values = np.abs(rng.normal(0.0, float(effect_cfg.get("scale", 0.5)), size=count))
    elif distribution == "uniform":
        low = float(effect_cfg.get("low", 0.2))
        high = float(effect_cfg.get("high", 0.8))
        values = rng.uniform(min(low, high), max(low, high), size=count)
    else:
        raise GeneratorError(f"Unsupported effect distribution '{distribution}'.")
    sign = str(effect_cfg.get("sign", "mixed")).lower()
    if sign == "positive":
        return values
    if sign == "negative":
        return -values
    return values * rng.choice([-1.0, 1.0], size=count)


def simulate_response(
    rng: np.random.Generator,
    eta: np.ndarray,
    family: str = "normal",
    *,
    link: Optional[str] = None,
    noise_sigma: float = 1.0,
    nb_r: float = 10.0,
) -> np.ndarray:
    """Draw a response with linear predictor ``eta`` from the named family."""

    fam = get_family(family, link)
    if fam.nuisance is not None:
        fam = get_family(fam, r=nb_r)
    mu = fam.mean(eta)
    if not np.all(np.isfinite(mu)):
        raise GeneratorError("Linear predictor maps to non-finite means; check intercept and effect sizes.")
    name = fam.name
    if name == "normal":
        return mu + rng.normal(0.0, float(noise_sigma), size=mu.shape)
    if name == "bernoulli":
        return rng.binomial(1, mu).astype(float)
    if name == "poisson":
        return rng.poisson(mu).astype(float)
    if name == "negative_binomial":
        return rng.negative_binomial(fam.r, fam.r / (fam.r + mu)).astype(float)
    if np.any(mu <= 0):
        raise GeneratorError(f"Family '{name}' needs strictly positive means; raise the intercept.")
    if name == "gamma":
        shape = 1.0 / max(float(noise_sigma) ** 2, 1e-8)
        return rng.gamma(shape, mu / shape)
    if name == "inverse_gaussian":
        return rng.wald(mu, 1.0 / max(float(noise_sigma) ** 2, 1e-8))
    raise GeneratorError(f"Unsupported family '{family}'.")


def generate_synthetic(config: SyntheticConfig, *, rng: Optional[np.random.Generator] = None) -> SyntheticDataset:
    if config.n <= 0 or config.p <= 0:
        raise GeneratorError("Both n and p must be positive.")
    if not (0 <= config.k <= config.p):
        raise GeneratorError("Number of causal predictors k must lie in [0, p].")

    local_rng = rng or np.random.default_rng(config.seed)
    groups = make_groups(config.p, config.G, config.group_sizes)
    design_kind = str(config.design).lower()

    info: Dict[str, object] = {"seed": config.seed, "name": config.name, "design": design_kind}
    if design_kind == "genotype":
        X, maf = simulate_genotypes(
            local_rng, config.n, config.p, maf_range=config.maf_range, missing_rate=config.missing_rate
        )
        moments = genotype_moments(X)
        info["maf"] = maf
        observed = np.where(X >= 0, X, 0).astype(float)
        filled = np.where(X >= 0, observed, moments.mean)
        standardized = (filled - moments.mean) / moments.scale
        eligible = np.flatnonzero(moments.scale > 1e-6)
    elif design_kind == "dense":
        X = _draw_dense(local_rng, config.n, config.p, config.correlation)
        X -= X.mean(axis=0, keepdims=True)
        X /= np.maximum(X.std(axis=0, keepdims=True), 1e-8)
        standardized = X
        eligible = np.arange(config.p)
    else:
        raise GeneratorError(f"Unsupported design '{config.design}'. Use 'genotype' or 'dense'.")

    beta = np.zeros(config.p, dtype=float)
    count = min(config.k, eligible.size)
    active = np.sort(local_rng.choice(eligible, size=count, replace=False)) if count else np.zeros(0, dtype=int)
    beta[active] = _draw_effects(local_rng, count, config.effect)

    extra = int(config.n_covariates)
    z = np.ones((config.n, 1 + extra), dtype=float)
    c = np.zeros(1 + extra, dtype=float)
    c[0] = float(config.intercept)
    if extra:
        z[:, 1:] = local_rng.standard_normal((config.n, extra))
        c[1:] = local_rng.normal(0.0, float(config.covariate_scale), size=extra)

    eta = standardized @ beta + z @ c
    y = simulate_response(
        local_rng,
        eta,
        config.family,
        link=config.link,
        noise_sigma=config.noise_sigma,
        nb_r=config.nb_r,
    )

    info.update({"active_idx": active, "family": config.family, "link": config.link})
    return SyntheticDataset(X=X, y=y, z=z, beta=beta, c=c, groups=groups, info=info)


def synthetic_config_from_dict(
    data_cfg: Mapping[str, object],
    *,
    seed: Optional[int] = None,
    name: Optional[str] = None,
    family: Optional[str] = None,
    link: Optional[str] = None,
) -> SyntheticConfig:
    if "n" not in data_cfg or "p" not in data_cfg:
        raise KeyError("data configuration requires 'n' and 'p'.")

    cfg_seed = data_cfg.get("seed", seed)
    G = data_cfg.get("G")
    maf_range = data_cfg.get("maf_range", (0.05, 0.5))
    return SyntheticConfig(
        n=int(data_cfg["n"]),
        p=int(data_cfg["p"]),
        k=int(data_cfg.get("k", 5)),
        design=str(data_cfg.get("design", "genotype")),
        maf_range=(float(maf_range[0]), float(maf_range[1])),
        missing_rate=float(data_cfg.get("missing_rate", 0.0)),
        correlation=dict(data_cfg.get("correlation", {}) or {}),
        effect=dict(data_cfg.get("effect", {}) or {}),
        family=str(data_cfg.get("family", family or "normal")),
        link=data_cfg.get("link", link),
        noise_sigma=float(data_cfg.get("noise_sigma", 1.0)),
        nb_r=float(data_cfg.get("nb_r", 10.0)),
        intercept=float(data_cfg.get("intercept", 0.0)),
        n_covariates=int(data_cfg.get("n_covariates", 0)),
        covariate_scale=float(data_cfg.get("covariate_scale", 0.2)),
        G=None if G is None else int(G),
        group_sizes=data_cfg.get("group_sizes"),
        seed=None if cfg_seed is None else int(cfg_seed),
        name=name or data_cfg.get("name"),
    )
