"""Main entrypoint for the TBI history and dementia analysis pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import pandas as pd

from .aggregate import AggregatedFit, run_aggregated_analysis
from .config import (
    ASSUMPTIONS,
    CHANGE_LOG,
    CONFIG,
    OPEN_QUESTIONS,
    REQUIRED_OUTPUT_FILES,
    ensure_output_dir,
    validate_config,
)
from .io_utils import load_donor_csv
from .modeling import ModelSequence, SelectionResult, backward_eliminate, run_interaction_tests, run_model_sequence
from .plots import plot_distribution_by_outcome, plot_glm_diagnostics, plot_influence
from .recode import DerivedTables, build_derived_tables
from .reporting import write_report


@dataclass
class PipelineRunResult:
    output_dir: Path
    generated_files: list[str]
    tables: DerivedTables
    selection: SelectionResult
    sequence: ModelSequence
    interaction_results: pd.DataFrame
    aggregated: AggregatedFit
    notes: list[str]


def _configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(message)s",
    )


def _print_df(label: str, df: pd.DataFrame, max_rows: int = 30) -> None:
    print(f"\n===== {label} =====")
    if df.empty:
        print("[empty]")
        return
    if len(df) > max_rows:
        print(df.head(max_rows).to_string(index=False))
        print(f"... ({len(df)} rows total)")
    else:
        print(df.to_string(index=False))


def _save_table(file_name: str, df: pd.DataFrame, output_dir: Path, generated_files: list[str]) -> Path:
    out_path = output_dir / file_name
    df.to_csv(out_path, index=False)
    generated_files.append(out_path.name)
    logging.info("Saved %s (%s rows)", file_name, len(df))
    if logging.getLogger().isEnabledFor(logging.DEBUG) and not df.empty:
        logging.debug("%s preview:\n%s", file_name, df.head(20).to_string(index=False))
    if bool(CONFIG.get("print_tables", False)):
        _print_df(file_name, df, max_rows=int(CONFIG.get("print_table_max_rows", 30)))
    return out_path


def _verify_outputs(output_dir: Path, notes: list[str]) -> None:
    for file_name in REQUIRED_OUTPUT_FILES:
        if file_name == "REPORT.md":
            continue
        if not (output_dir / file_name).exists():
            notes.append(f"Missing expected output artifact: {file_name}")


def main(csv_path: str | Path | None = None, output_dir: str | Path | None = None) -> PipelineRunResult:
    _configure_logging()
    validate_config()

    out_dir = ensure_output_dir(output_dir)
    source = Path(csv_path) if csv_path is not None else Path(CONFIG["input_csv"])
    dpi = int(CONFIG["figure_dpi"])
    outcome = CONFIG["outcome_col"]
    logging.info("Starting TBI/dementia pipeline. input=%s", source)
    logging.info("Output directory: %s", out_dir)

    notes: list[str] = []
    generated_files: list[str] = []

    raw = load_donor_csv(source, required_columns=CONFIG["required_columns"])
    tables = build_derived_tables(raw, CONFIG)
    _save_table("sample_flow.csv", tables.sample_flow, out_dir, generated_files)

    selection = backward_eliminate(
        tables.donor,
        outcome,
        CONFIG["candidate_confounders"],
        threshold=float(CONFIG["elimination_threshold"]),
        config=CONFIG,
    )
    _save_table("confounder_selection_steps.csv", selection.steps, out_dir, generated_files)

    sequence = run_model_sequence(tables, selection.retained, notes=notes, config=CONFIG)
    _save_table("model_sequence_coefficients.csv", sequence.coefficients, out_dir, generated_files)
    _save_table("separation_diagnostics.csv", sequence.separation, out_dir, generated_files)
    distributions = pd.concat(
        [d.assign(level=d["level"].astype(str)) for d in sequence.distributions.values()],
        ignore_index=True,
    )
    _save_table("exposure_distributions.csv", distributions, out_dir, generated_files)

    figure_sources = [
        ("age_at_first_tbi", tables.donor, "age_at_first_tbi"),
        ("longest_loc_duration_raw", tables.donor2, "longest_loc_duration"),
        ("longest_loc_duration", tables.donor3, "longest_loc_duration"),
        ("num_tbi_w_loc", tables.donor4, "num_tbi_w_loc_count"),
    ]
    for name, df, column in figure_sources:
        path = plot_distribution_by_outcome(df, column, out_dir / f"dist_{name}.png", outcome=outcome, dpi=dpi)
        generated_files.append(path.name)

    final_terms = [*selection.retained, "age_at_first_tbi", "longest_loc_duration", "num_tbi_w_loc"]
    interaction_results = run_interaction_tests(
        tables.donor4,
        final_terms,
        CONFIG["interaction_terms"],
        notes=notes,
        config=CONFIG,
    )
    _save_table("interaction_lrt.csv", interaction_results, out_dir, generated_files)
    if "retain_interaction" in interaction_results.columns:
        retained = interaction_results.loc[interaction_results["retain_interaction"].fillna(False).astype(bool)]
        for label in retained["interaction"]:
            notes.append(f"Interaction {label} is significant at alpha={CONFIG['lrt_alpha']}; review before finalizing.")

    aggregated = run_aggregated_analysis(tables.donor4, final_terms, notes=notes, config=CONFIG)
    _save_table("aggregated_counts.csv", aggregated.grouped, out_dir, generated_files)
    _save_table("aggregated_model_coefficients.csv", aggregated.coefficients, out_dir, generated_files)
    _save_table("influence_table.csv", aggregated.influence, out_dir, generated_files)
    for path in (
        plot_glm_diagnostics(aggregated.fit, out_dir / "glm_diagnostics.png", dpi=dpi),
        plot_influence(aggregated.influence, out_dir / "influence_plot.png", dpi=dpi),
    ):
        generated_files.append(path.name)

    _verify_outputs(out_dir, notes)

    report_path = write_report(
        output_dir=out_dir,
        change_log=CHANGE_LOG,
        assumptions=ASSUMPTIONS,
        open_questions=OPEN_QUESTIONS,
        sample_flow=tables.sample_flow,
        retained_confounders=selection.retained,
        selection_steps=selection.steps,
        coefficients=sequence.coefficients,
        interaction_results=interaction_results,
        influence=aggregated.influence,
        generated_files=generated_files,
        notes=notes,
    )
    generated_files.append(report_path.name)

    logging.info("Pipeline complete. Generated files:")
    for fp in sorted(generated_files):
        logging.info("- %s", fp)

    return PipelineRunResult(
        output_dir=out_dir,
        generated_files=sorted(generated_files),
        tables=tables,
        selection=selection,
        sequence=sequence,
        interaction_results=interaction_results,
        aggregated=aggregated,
        notes=notes,
    )


if __name__ == "__main__":
    main()
