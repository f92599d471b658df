"""Report generation for the TBI and dementia analysis outputs."""

from __future__ import annotations

from pathlib import Path

import pandas as pd


def _fmt_num(x: float | int | None, digits: int = 3) -> str:
    if x is None or pd.isna(x):
        return "NA"
    return f"{float(x):.{digits}f}"


def _fmt_p(x: float | None) -> str:
    if x is None or pd.isna(x):
        return "NA"
    return "<0.001" if float(x) < 0.001 else f"{float(x):.3f}"


def _or_lines(coefficients: pd.DataFrame, model: str) -> list[str]:
    lines: list[str] = []
    sub = coefficients.loc[coefficients["model"] == model]
    if sub.empty:
        return ["- Model unavailable."]
    if "error" in sub.columns and sub["error"].notna().any():
        return [f"- Model failed: {sub['error'].dropna().iloc[0]}"]
    n = sub["n"].iloc[0] if "n" in sub.columns else "NA"
    events = sub["events"].iloc[0] if "events" in sub.columns else "NA"
    lines.append(f"- n = {n}, dementia = {events}")
    lines.append("")
    lines.append("| term | OR | 95% CI | p |")
    lines.append("|---|---|---|---|")
    for _, row in sub.iterrows():
        if bool(row.get("aliased", False)):
            lines.append(f"| {row['term']} | aliased | | |")
            continue
        ci = f"{_fmt_num(row['or_ci_low'])} - {_fmt_num(row['or_ci_high'])}"
        lines.append(f"| {row['term']} | {_fmt_num(row['or'])} | {ci} | {_fmt_p(row['p_value'])} |")
    return lines


def write_report(
    *,
    output_dir: Path,
    change_log: list[str],
    assumptions: list[str],
    open_questions: list[str],
    sample_flow: pd.DataFrame,
    retained_confounders: list[str],
    selection_steps: pd.DataFrame,
    coefficients: pd.DataFrame,
    interaction_results: pd.DataFrame,
    influence: pd.DataFrame,
    generated_files: list[str],
    notes: list[str],
) -> Path:
    report_path = output_dir / "REPORT.md"

    lines: list[str] = []
    lines.append("# REPORT: Traumatic Brain Injury History and Dementia")
    lines.append("")

    lines.append("## Change Log")
    for entry in change_log:
        lines.append(f"- {entry}")
    lines.append("")

    lines.append("## Assumptions")
    for entry in assumptions:
        lines.append(f"- {entry}")
    lines.append("")

    lines.append("## Sample Flow")
    if sample_flow.empty:
        lines.append("- Sample flow unavailable.")
    else:
        for _, row in sample_flow.iterrows():
            lines.append(
                f"- {row['step']} ({row['description']}): n={row['n']}, dementia={row['n_dementia']}, "
                f"removed={row['n_removed']}"
            )
    lines.append("")

    lines.append("## Confounder Selection")
    lines.append("- Firth-penalized logistic regression, backward elimination by penalized likelihood-ratio p-value.")
    lines.append(f"- Retained: {', '.join(retained_confounders) if retained_confounders else 'none'}")
    if not selection_steps.empty:
        removed = selection_steps.loc[selection_steps["removed"].astype(bool)]
        for _, row in removed.iterrows():
            lines.append(f"- Step {row['step']}: removed `{row['candidate']}` (p={_fmt_p(row['p_value'])})")
    lines.append("")

    lines.append("## Model Sequence")
    if coefficients.empty:
        lines.append("- No models were fitted.")
    else:
        for model in coefficients["model"].drop_duplicates():
            lines.append(f"### {model}")
            lines.extend(_or_lines(coefficients, model))
            lines.append("")

    lines.append("## Interaction Tests (likelihood ratio)")
    if interaction_results.empty:
        lines.append("- No interaction tests were run.")
    else:
        for _, row in interaction_results.iterrows():
            if "error" in row.index and pd.notna(row.get("error")):
                lines.append(f"- `{row['interaction']}`: not testable ({row['error']})")
                continue
            decision = "retained" if bool(row["retain_interaction"]) else "discarded"
            lines.append(
                f"- `{row['interaction']}`: LR={_fmt_num(row['statistic'])}, df={row['df']}, "
                f"p={_fmt_p(row['p_value'])} -> {decision}"
            )
    lines.append("")

    lines.append("## Influence Review (aggregated binomial refit)")
    flagged = influence.loc[influence["flag_for_review"]] if not influence.empty else influence
    if flagged.empty:
        lines.append("- No covariate patterns exceeded the influence cutoffs.")
    else:
        lines.append(f"- {len(flagged)} covariate pattern(s) flagged for manual review; none were removed.")
        for idx, row in flagged.iterrows():
            lines.append(
                f"- row {idx}: cases={row['cases']}/{row['trials']}, hat={_fmt_num(row['hat'])}, "
                f"rstudent={_fmt_num(row['resid_studentized'])}, cooks={_fmt_num(row['cooks_d'])}"
            )
    lines.append("")

    lines.append("## Generated Artifacts")
    for fp in sorted(generated_files):
        lines.append(f"- `{fp}`")
    lines.append("")

    lines.append("## Notes")
    if not notes:
        lines.append("- None.")
    else:
        for note in notes:
            lines.append(f"- {note}")
    lines.append("")

    lines.append("## Open Questions")
    for entry in open_questions:
        lines.append(f"- {entry}")
    lines.append("")

    lines.append("## Interpretation")
    lines.append("_Analyst narrative goes here. Odds ratios above are not interpreted automatically._")
    lines.append("")

    lines.append("## Interpretation Guardrails")
    lines.append("- Each model's n reflects the filters applied to its derived table; compare across models with care.")
    lines.append("- Aliased terms are not estimable in that model and are reported without estimates.")
    lines.append("- Influence flags are for human review only.")

    report_path.write_text("\n".join(lines), encoding="utf-8")
    return report_path
