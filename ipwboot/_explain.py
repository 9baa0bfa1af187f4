"""
Narrative explanation renderer for bootstrap IPW results.

``explain_ipw`` takes a fitted ``IPWResult`` and returns a formatted
multi-line string; ``IPWResult.executive_summary()`` calls it.
"""
from __future__ import annotations

_SEP = "━" * 66


# ── Shared helpers ─────────────────────────────────────────────────────────────

def _fmt_p(p: float) -> str:
    if p != p:
        return "p not available"
    if p < 0.001:
        return "p < 0.001"
    return f"p = {p:.3f}"


def _fmt_ci(lo: float, hi: float) -> str:
    return f"[{lo:.4f}, {hi:.4f}]"


def _list_vars(names: list[str]) -> str:
    if len(names) == 1:
        return names[0]
    return ", ".join(names[:-1]) + f" and {names[-1]}"


def _population_phrase(estimand) -> str:
    return {
        "ATE": "across the whole population",
        "ATT": "among treated units",
        "ATC": "among untreated units",
        "OVERLAP": "in the population where treatment assignment is most uncertain",
    }[estimand.value]


def _effect_phrase(effect: float, treatment: str, outcome: str, estimand) -> str:
    direction = "increase" if effect >= 0 else "decrease"
    return (
        f"{_population_phrase(estimand)}, receiving {treatment} is estimated to cause "
        f"an {direction} of {abs(effect):.4f} in {outcome} compared to not being treated"
    )


def _weighting_phrase(estimand) -> str:
    return {
        "ATE": "each unit is weighted by the inverse of the probability of the treatment "
               "it actually received",
        "ATT": "treated units keep weight 1 and untreated units are weighted by the odds "
               "of treatment, e / (1 - e), so they resemble the treated group",
        "ATC": "untreated units keep weight 1 and treated units are weighted by the odds "
               "of no treatment, (1 - e) / e, so they resemble the untreated group",
        "OVERLAP": "treated units are weighted by 1 - e and untreated units by e, "
                   "emphasising units whose treatment was most uncertain",
    }[estimand.value]


# ── Section builders ───────────────────────────────────────────────────────────

def _covariate_section(covariates: list[str], adjust_for: list[str], treatment: str) -> str:
    lines = ["COVARIATES"]
    if covariates:
        lines.append(
            f"The propensity score (probability of {treatment} given covariates) is "
            f"modelled with logistic regression on {_list_vars(covariates)}."
        )
    else:
        lines.append(
            f"No covariates were supplied, so every unit gets the same propensity "
            f"score (the base rate of {treatment}) and weighting cannot remove "
            f"any confounding."
        )
    if adjust_for:
        lines.append(
            f"The weighted outcome regression additionally adjusts for "
            f"{_list_vars(adjust_for)}."
        )
    return "\n".join(lines)


def _assumptions_section(assumptions: list) -> str:
    n = len(assumptions)
    n_u = sum(1 for a in assumptions if not a.testable)
    n_t = n - n_u

    if n_u == n:
        intro = (
            f"All {n} required assumptions are untestable from the data alone "
            f"and must be justified on substantive grounds."
        )
    else:
        intro = (
            f"{n_u} of the {n} required assumptions {'is' if n_u == 1 else 'are'} untestable "
            f"and must be justified on substantive grounds; "
            f"{n_t} can be checked in the data."
        )

    lines = ["ASSUMPTIONS", intro, ""]
    for a in assumptions:
        lines.append(f"  {a.fmt_tag()}  {a.name}")
    return "\n".join(lines)


def _resampling_section(result) -> str:
    lines = [
        "RESAMPLING",
        f"{result.n_attempted} of {result.n_requested} requested resamples were "
        f"processed in {result.elapsed:.2f}s.",
    ]
    if result.status.value == "cancelled":
        lines.append(
            "The run was cancelled before finishing; the interval below uses "
            "only the resamples completed before cancellation."
        )
    if result.n_skipped:
        stages = sorted({f.stage or "unknown" for f in result.failures})
        lines.append(
            f"{result.n_skipped} resample(s) were excluded because the "
            f"{' and '.join(stages)} model could not be fitted. The standard error "
            f"and interval are based on the remaining "
            f"{len(result.distribution.bootstrap_estimates)} bootstrap estimates."
        )
    return "\n".join(lines)


# ── Method explanation ─────────────────────────────────────────────────────────

def explain_ipw(result) -> str:
    T, Y = result._treatment, result._outcome
    est = result.estimand
    cfg = result.config
    lo, hi = result.conf_int
    bias = result.unadjusted_effect - result.effect

    cap_note = (
        f" Weights are capped at {cfg.weight_cap:g}." if cfg.weight_cap is not None else ""
    )

    blocks = [
        "\n".join([_SEP, f"Executive Summary — Inverse Probability Weighting (bootstrap)",
                   f"  {T} → {Y}  |  estimand: {est.value}", _SEP]),

        "\n".join([
            "METHOD",
            f"Inverse probability weighting estimates the {est.description} of {T} on "
            f"{Y} in two stages. First, a logistic regression predicts each unit's "
            f"probability of receiving {T} (the propensity score e), clipped to "
            f"[{cfg.propensity_clip:g}, {1 - cfg.propensity_clip:g}]. Second, "
            f"{_weighting_phrase(est)}, and a weighted regression of {Y} on {T} gives the effect.{cap_note} "
            f"Both stages are repeated on {cfg.resample_count} bootstrap resamples to "
            f"obtain the standard error and a percentile confidence interval.",
        ]),

        _covariate_section(result.covariates, result.adjust_for, T),
        _assumptions_section(result.assumptions),
        _resampling_section(result),

        "\n".join([
            "RESULT",
            f"{_effect_phrase(result.effect, T, Y, est).capitalize()} "
            f"({est.value} = {result.effect:.4f}, 95% CI: {_fmt_ci(lo, hi)}, "
            f"SE = {result.std_err:.4f}, {_fmt_p(result.pvalue)}).",
            "",
            f"The unweighted (naive) mean difference was {result.unadjusted_effect:.4f}. "
            f"The difference of {abs(bias):.4f} is the estimated confounding bias "
            f"removed by weighting on "
            f"{_list_vars(result.covariates) if result.covariates else 'the propensity score'}.",
        ]),

        "\n".join([
            "CAVEATS",
            f"Weighting balances only the covariates in the propensity model; "
            f"unobserved differences between treated and untreated units that affect "
            f"{Y} will still bias the estimate. Propensity scores close to 0 or 1 "
            f"produce large weights and unstable estimates: a wide bootstrap interval "
            f"or many clipped scores suggest weak overlap between the groups.",
        ]),

        _SEP,
    ]
    return "\n\n".join(blocks)
