"""Tables describing a sensitivity path.

The frontier table lists, per knot, the penalty ``lam``, the number of
active coordinates, the standard deviation ``sqrt(k'Sig k)`` and the
worst-case bias per unit radius. Moving down the table trades variance for
robustness to misspecification.
"""

from __future__ import annotations

from typing import Literal

import pandas as pd
from tabulate import tabulate

from gmmsens.estimators.base import SensitivityPath
from gmmsens.exceptions import InvalidArgumentError

__all__ = ["format_path", "path_summary"]


def path_summary(path: SensitivityPath, *, include_sensitivities: bool = False) -> pd.DataFrame:
    """Bias-variance frontier of ``path``, one row per knot."""
    df = pd.DataFrame(
        {
            "lam": path.lam,
            "n_active": path.active.sum(axis=1).astype(int),
            "sd": path.std_devs(),
            "max_bias": path.bias_bounds(),
        },
    )
    df.index.name = "knot"
    if include_sensitivities:
        sens = pd.DataFrame(path.sensitivities, columns=[f"k[{n}]" for n in path.model.names])
        sens.index.name = "knot"
        df = pd.concat([df, sens], axis=1)
    return df


def format_path(
    path: SensitivityPath,
    *,
    output: Literal["text", "latex", "html"] = "text",
    digits: int = 4,
    include_sensitivities: bool = False,
) -> str:
    """Render :func:`path_summary` as a text, LaTeX or HTML table."""
    fmt = {"text": "simple", "latex": "latex_booktabs", "html": "html"}.get(output)
    if fmt is None:
        raise InvalidArgumentError(f"output must be 'text', 'latex' or 'html'; got {output!r}.")
    df = path_summary(path, include_sensitivities=include_sensitivities)
    floatfmt = f".{int(digits)}g"
    title = f"Sensitivity path (norm={path.norm}, knots={path.n_knots})"
    body = tabulate(
        df.reset_index().to_numpy(dtype=object).tolist(),
        headers=["knot", *df.columns],
        tablefmt=fmt,
        floatfmt=floatfmt,
    )
    if output == "text":
        return f"{title}\n{body}"
    return body

