"""Distribution / link capability consumed by the IHT engine.

The engine only needs a handful of element-wise maps: the inverse link (mean),
its derivative, the variance function, the deviance and the log-likelihood.
The set of supported families is closed; a family is resolved once with
:func:`get_family` at the start of a fit and never switched afterwards.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from typing import ClassVar, Dict, Optional, Tuple, Type, Union

import numpy as np
from scipy.optimize import minimize_scalar
from scipy.special import expit, gammaln, logit, ndtr, ndtri, xlogy

from ihtcv.models.errors import ConfigurationError

__all__ = [
    "Link",
    "IdentityLink",
    "LogitLink",
    "ProbitLink",
    "LogLink",
    "InverseLink",
    "InverseSquareLink",
    "Family",
    "Normal",
    "Bernoulli",
    "Poisson",
    "NegativeBinomial",
    "Gamma",
    "InverseGaussian",
    "FAMILIES",
    "get_family",
]

_EPS = 1e-10
_ETA_CLIP = 30.0
_LOG_2PI = math.log(2.0 * math.pi)


# ------------------------------
# Links
# ------------------------------
class Link:
    """Monotone link g with mean = g^{-1}(eta)."""

    name: str = "link"

    def link(self, mu: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def mean(self, eta: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def mu_eta(self, eta: np.ndarray) -> np.ndarray:
        """Derivative d mu / d eta."""
        raise NotImplementedError

    def __eq__(self, other: object) -> bool:
        return type(self) is type(other)

    def __hash__(self) -> int:
        return hash(self.name)

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class IdentityLink(Link):
    name = "identity"

    def link(self, mu):
        return np.asarray(mu)

    def mean(self, eta):
        return np.asarray(eta)

    def mu_eta(self, eta):
        return np.ones_like(eta)


class LogitLink(Link):
    name = "logit"

    def link(self, mu):
        return logit(np.clip(mu, _EPS, 1.0 - _EPS))

    def mean(self, eta):
        return expit(eta)

    def mu_eta(self, eta):
        p = expit(eta)
        return np.maximum(p * (1.0 - p), _EPS)


class ProbitLink(Link):
    name = "probit"

    def link(self, mu):
        return ndtri(np.clip(mu, _EPS, 1.0 - _EPS))

    def mean(self, eta):
        return ndtr(eta)

    def mu_eta(self, eta):
        return np.maximum(np.exp(-0.5 * np.square(eta)) / math.sqrt(2.0 * math.pi), _EPS)


class LogLink(Link):
    name = "log"

    def link(self, mu):
        return np.log(np.maximum(mu, _EPS))

    def mean(self, eta):
        return np.exp(np.clip(eta, -_ETA_CLIP, _ETA_CLIP))

    def mu_eta(self, eta):
        return np.maximum(np.exp(np.clip(eta, -_ETA_CLIP, _ETA_CLIP)), _EPS)


class InverseLink(Link):
    name = "inverse"

    def link(self, mu):
        return 1.0 / np.asarray(mu)

    def mean(self, eta):
        eta = np.asarray(eta)
        return 1.0 / np.where(np.abs(eta) < _EPS, _EPS, eta)

    def mu_eta(self, eta):
        eta = np.asarray(eta)
        return -1.0 / np.square(np.where(np.abs(eta) < _EPS, _EPS, eta))


class InverseSquareLink(Link):
    name = "inverse_square"

    def link(self, mu):
        return 1.0 / np.square(mu)

    def mean(self, eta):
        with np.errstate(invalid="ignore", divide="ignore"):
            return 1.0 / np.sqrt(eta)

    def mu_eta(self, eta):
        with np.errstate(invalid="ignore", divide="ignore"):
            return -0.5 * np.power(eta, -1.5)


LINKS: Dict[str, Type[Link]] = {
    "identity": IdentityLink,
    "logit": LogitLink,
    "probit": ProbitLink,
    "log": LogLink,
    "inverse": InverseLink,
    "inverse_square": InverseSquareLink,
    "inversesquare": InverseSquareLink,
}


def _resolve_link(link: Union[str, Link, None]) -> Optional[Link]:
    if link is None or isinstance(link, Link):
        return link
    key = str(link).strip().lower().replace("-", "_")
    if key.endswith("link"):
        key = key[: -len("link")].rstrip("_")
    if key not in LINKS:
        raise ConfigurationError(f"Unknown link '{link}'. Supported: {sorted(set(LINKS))}.")
    return LINKS[key]()


# ------------------------------
# Families
# ------------------------------
@dataclass(frozen=True)
class Family:
    """Exponential-family response distribution paired with a link."""

    link: Link = field(default_factory=IdentityLink)

    name = "family"
    canonical: ClassVar[Type[Link]] = IdentityLink
    allowed_links: ClassVar[Tuple[Type[Link], ...]] = (IdentityLink,)

    def __post_init__(self) -> None:
        if not isinstance(self.link, self.allowed_links):
            allowed = ", ".join(cls.name for cls in self.allowed_links)
            raise ConfigurationError(
                f"Link '{self.link.name}' is not supported for family '{self.name}'. Use one of: {allowed}."
            )

    # element-wise pieces
    def mean(self, eta: np.ndarray) -> np.ndarray:
        return self.link.mean(eta)

    def mu_eta(self, eta: np.ndarray) -> np.ndarray:
        return self.link.mu_eta(eta)

    def variance(self, mu: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def unit_deviance(self, y: np.ndarray, mu: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def unit_loglik(self, y: np.ndarray, mu: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def initial_mean(self, y: np.ndarray) -> np.ndarray:
        return np.asarray(y, dtype=float)

    def validate_y(self, y: np.ndarray) -> None:
        if not np.all(np.isfinite(y)):
            raise ConfigurationError(f"Response for family '{self.name}' contains non-finite values.")

    # reductions
    def deviance(self, y: np.ndarray, mu: np.ndarray, weights: Optional[np.ndarray] = None) -> float:
        dev = self.unit_deviance(np.asarray(y), np.asarray(mu))
        if weights is None:
            return float(np.sum(dev))
        return float(np.dot(np.asarray(weights), dev))

    def loglikelihood(self, y: np.ndarray, mu: np.ndarray, weights: Optional[np.ndarray] = None) -> float:
        ll = self.unit_loglik(np.asarray(y), np.asarray(mu))
        if weights is None:
            return float(np.sum(ll))
        return float(np.dot(np.asarray(weights), ll))

    def working_weights(
        self,
        y: np.ndarray,
        mu: np.ndarray,
        eta: np.ndarray,
        weights: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Return (score residual, Fisher weight) per sample.

        The score of the linear predictor is ``w (y - mu) mu'(eta) / V(mu)``; for
        canonical links this collapses to ``w (y - mu)``.
        """
        d = self.mu_eta(eta)
        v = np.maximum(self.variance(mu), _EPS)
        score = weights * (y - mu) * d / v
        fisher = weights * np.square(d) / v
        return score, fisher

    @property
    def is_canonical(self) -> bool:
        return isinstance(self.link, self.canonical)

    @property
    def nuisance(self) -> Optional[float]:
        return None

    def estimate_nuisance(self, y: np.ndarray, mu: np.ndarray, weights: Optional[np.ndarray] = None) -> "Family":
        return self

    def describe(self) -> str:
        return f"{self.name}/{self.link.name}"


@dataclass(frozen=True)
class Normal(Family):
    link: Link = field(default_factory=IdentityLink)

    name = "normal"
    canonical = IdentityLink
    allowed_links = (IdentityLink,)

    def variance(self, mu):
        return np.ones_like(mu)

    def unit_deviance(self, y, mu):
        return np.square(y - mu)

    def unit_loglik(self, y, mu):
        return -0.5 * (np.square(y - mu) + _LOG_2PI)


@dataclass(frozen=True)
class Bernoulli(Family):
    link: Link = field(default_factory=LogitLink)

    name = "bernoulli"
    canonical = LogitLink
    allowed_links = (LogitLink, ProbitLink)

    def mean(self, eta):
        return np.clip(self.link.mean(eta), _EPS, 1.0 - _EPS)

    def variance(self, mu):
        return mu * (1.0 - mu)

    def unit_deviance(self, y, mu):
        mu = np.clip(mu, _EPS, 1.0 - _EPS)
        return 2.0 * (xlogy(y, y / mu) + xlogy(1.0 - y, (1.0 - y) / (1.0 - mu)))

    def unit_loglik(self, y, mu):
        mu = np.clip(mu, _EPS, 1.0 - _EPS)
        return xlogy(y, mu) + xlogy(1.0 - y, 1.0 - mu)

    def initial_mean(self, y):
        return (np.asarray(y, dtype=float) + 0.5) / 2.0

    def validate_y(self, y):
        super().validate_y(y)
        if not np.all((y == 0) | (y == 1)):
            raise ConfigurationError("Bernoulli response must be coded as 0/1.")


@dataclass(frozen=True)
class Poisson(Family):
    link: Link = field(default_factory=LogLink)

    name = "poisson"
    canonical = LogLink
    allowed_links = (LogLink,)

    def variance(self, mu):
        return mu

    def unit_deviance(self, y, mu):
        mu = np.maximum(mu, _EPS)
        return 2.0 * (xlogy(y, y / mu) - (y - mu))

    def unit_loglik(self, y, mu):
        mu = np.maximum(mu, _EPS)
        return xlogy(y, mu) - mu - gammaln(y + 1.0)

    def initial_mean(self, y):
        return np.asarray(y, dtype=float) + 0.1

    def validate_y(self, y):
        super().validate_y(y)
        if np.any(y < 0):
            raise ConfigurationError("Poisson response must be non-negative.")


@dataclass(frozen=True)
class NegativeBinomial(Family):
    link: Link = field(default_factory=LogLink)
    r: float = 10.0

    name = "negative_binomial"
    canonical = LogLink
    allowed_links = (LogLink,)

    def __post_init__(self) -> None:
        super().__post_init__()
        if not (self.r > 0 and math.isfinite(self.r)):
            raise ConfigurationError(f"Negative binomial dispersion r must be positive, got {self.r}.")

    def variance(self, mu):
        return mu + np.square(mu) / self.r

    def unit_deviance(self, y, mu):
        mu = np.maximum(mu, _EPS)
        r = self.r
        return 2.0 * (xlogy(y, y / mu) - (y + r) * np.log((y + r) / (mu + r)))

    def unit_loglik(self, y, mu):
        return _negbin_loglik(y, np.maximum(mu, _EPS), self.r)

    def initial_mean(self, y):
        return np.asarray(y, dtype=float) + 0.1

    def validate_y(self, y):
        super().validate_y(y)
        if np.any(y < 0):
            raise ConfigurationError("Negative binomial response must be non-negative.")

    @property
    def nuisance(self) -> Optional[float]:
        return float(self.r)

    def estimate_nuisance(self, y, mu, weights=None):
        """Maximise the log-likelihood over ``log r`` with the mean held fixed."""
        y = np.asarray(y, dtype=float)
        mu = np.maximum(np.asarray(mu, dtype=float), _EPS)
        w = np.ones_like(y) if weights is None else np.asarray(weights, dtype=float)

        def _negative(log_r: float) -> float:
            return -float(np.dot(w, _negbin_loglik(y, mu, math.exp(log_r))))

        res = minimize_scalar(_negative, bounds=(-10.0, 10.0), method="bounded")
        if not np.isfinite(res.x):
            return self
        return replace(self, r=float(math.exp(res.x)))


def _negbin_loglik(y: np.ndarray, mu: np.ndarray, r: float) -> np.ndarray:
    return (
        gammaln(y + r)
        - gammaln(r)
        - gammaln(y + 1.0)
        + r * np.log(r / (r + mu))
        + xlogy(y, mu / (r + mu))
    )


@dataclass(frozen=True)
class Gamma(Family):
    link: Link = field(default_factory=InverseLink)

    name = "gamma"
    canonical = InverseLink
    allowed_links = (InverseLink, LogLink)

    def variance(self, mu):
        return np.square(mu)

    def unit_deviance(self, y, mu):
        with np.errstate(invalid="ignore", divide="ignore"):
            return 2.0 * (-np.log(y / mu) + (y - mu) / mu)

    def unit_loglik(self, y, mu):
        with np.errstate(invalid="ignore", divide="ignore"):
            return -y / mu - np.log(mu)

    def initial_mean(self, y):
        return np.maximum(np.asarray(y, dtype=float), _EPS)

    def validate_y(self, y):
        super().validate_y(y)
        if np.any(y <= 0):
            raise ConfigurationError("Gamma response must be strictly positive.")


@dataclass(frozen=True)
class InverseGaussian(Family):
    link: Link = field(default_factory=InverseSquareLink)

    name = "inverse_gaussian"
    canonical = InverseSquareLink
    allowed_links = (InverseSquareLink, LogLink)

    def variance(self, mu):
        return np.power(mu, 3)

    def unit_deviance(self, y, mu):
        with np.errstate(invalid="ignore", divide="ignore"):
            return np.square(y - mu) / (y * np.square(mu))

    def unit_loglik(self, y, mu):
        with np.errstate(invalid="ignore", divide="ignore"):
            return -0.5 * (_LOG_2PI + 3.0 * np.log(y)) - np.square(y - mu) / (2.0 * np.square(mu) * y)

    def initial_mean(self, y):
        return np.maximum(np.asarray(y, dtype=float), _EPS)

    def validate_y(self, y):
        super().validate_y(y)
        if np.any(y <= 0):
            raise ConfigurationError("Inverse Gaussian response must be strictly positive.")


# ------------------------------
# Registry
# ------------------------------
FAMILIES: Dict[str, Type[Family]] = {}


def _register(cls: Type[Family], *aliases: str) -> None:
    for key in (cls.name, *aliases):
        FAMILIES[key] = cls


_register(Normal, "gaussian")
_register(Bernoulli, "binomial", "logistic", "binary")
_register(Poisson)
_register(NegativeBinomial, "negbin", "nb", "negativebinomial")
_register(Gamma)
_register(InverseGaussian, "inversegaussian", "inverse-gaussian", "invgauss")


def get_family(
    family: Union[str, Family, None] = "normal",
    link: Union[str, Link, None] = None,
    **params: float,
) -> Family:
    """Resolve a family name (and optional link) to a :class:`Family` instance."""

    if isinstance(family, Family):
        if link is None and not params:
            return family
        kwargs: Dict[str, object] = dict(params)
        if link is not None:
            kwargs["link"] = _resolve_link(link)
        return replace(family, **kwargs)

    key = "normal" if family is None else str(family).strip().lower()
    if key not in FAMILIES:
        raise ConfigurationError(f"Unknown family '{family}'. Supported: {sorted(FAMILIES)}.")
    cls = FAMILIES[key]
    kwargs = {k: float(v) for k, v in params.items() if v is not None}
    if cls is not NegativeBinomial and kwargs:
        raise ConfigurationError(f"Family '{cls.name}' takes no parameters, got {sorted(kwargs)}.")
    resolved = _resolve_link(link)
    if resolved is not None:
        kwargs["link"] = resolved
    return cls(**kwargs)
