"""End-to-end tests for `rnaseqde differential`."""

import json
from unittest.mock import patch

import pandas as pd
import pytest

from rnaseqde import __version__
from rnaseqde.cli import main
from rnaseqde.stats.differential import RESULT_COLUMNS
from rnaseqde.validation.enrichment_tests import ENRICHMENT_COLUMNS


@pytest.fixture
def inputs(tmp_path, de_dataset):
    counts, up, down = de_dataset
    counts_path = tmp_path / "counts.csv"
    counts.to_dataframe().astype(int).rename_axis("feature_id").to_csv(counts_path)

    metadata_path = tmp_path / "samples.csv"
    counts.sample_metadata.rename_axis("sample_id").to_csv(metadata_path)

    gmt_path = tmp_path / "sets.gmt"
    gmt_path.write_text(
        "UP_SET\tplanted up\t" + "\t".join(sorted(up)) + "\n"
        "DOWN_SET\tplanted down\t" + "\t".join(sorted(down)) + "\n"
        "BACKGROUND\tunrelated\t" + "\t".join(f"gene{i:04d}" for i in range(100, 200)) + "\n"
    )
    return counts_path, metadata_path, gmt_path


class TestDifferentialCommand:

    def test_writes_results_and_summary(self, inputs, tmp_path):
        counts_path, metadata_path, _ = inputs
        out = tmp_path / "out"

        code = main([
            "differential", "-c", str(counts_path), "-m", str(metadata_path),
            "-o", str(out), "--baseline", "control",
        ])

        assert code == 0
        table = pd.read_csv(out / "results.csv")
        assert list(table.columns) == RESULT_COLUMNS
        assert table['P.Value'].is_monotonic_increasing

        summary = json.loads((out / "run_summary.json").read_text())
        assert summary['coefficient'] == "group[treated]"
        assert summary['n_features_tested'] == len(table)
        assert summary['n_features_input'] == 400
        assert summary['n_up'] > 0 and summary['n_down'] > 0
        assert summary['enrichment']['status'] == 'skipped'
        assert not (out / "enrichment_up.csv").exists()

    def test_gene_set_enrichment(self, inputs, tmp_path):
        counts_path, metadata_path, gmt_path = inputs
        out = tmp_path / "out"

        code = main([
            "differential", "-c", str(counts_path), "-m", str(metadata_path),
            "-o", str(out), "--baseline", "control", "-g", str(gmt_path),
        ])

        assert code == 0
        up = pd.read_csv(out / "enrichment_up.csv")
        down = pd.read_csv(out / "enrichment_down.csv")
        assert list(up.columns) == ENRICHMENT_COLUMNS
        assert up.loc[0, 'set_id'] == "UP_SET"
        assert down.loc[0, 'set_id'] == "DOWN_SET"
        assert up.loc[0, 'adj_p_value'] < 0.05

        summary = json.loads((out / "run_summary.json").read_text())
        assert summary['enrichment']['status'] == 'completed'

    def test_enrichment_failure_keeps_results(self, inputs, tmp_path):
        """A gene-set file matching no tested gene fails only the enrichment stage."""
        counts_path, metadata_path, _ = inputs
        gmt = tmp_path / "unrelated.gmt"
        gmt.write_text("S1\tnone\tNOT_A_GENE\n")
        out = tmp_path / "out"

        code = main([
            "differential", "-c", str(counts_path), "-m", str(metadata_path),
            "-o", str(out), "-g", str(gmt),
        ])

        assert code == 1
        assert (out / "results.csv").exists()
        summary = json.loads((out / "run_summary.json").read_text())
        assert summary['enrichment']['status'] == 'failed'
        assert "EnrichmentError" in summary['enrichment']['error']

    def test_mygene_lookup_failure_keeps_results(self, inputs, tmp_path):
        counts_path, metadata_path, _ = inputs
        out = tmp_path / "out"

        with patch("mygene.MyGeneInfo") as cls:
            cls.return_value.querymany.side_effect = ValueError("bad request")
            code = main([
                "differential", "-c", str(counts_path), "-m", str(metadata_path),
                "-o", str(out), "--use-mygene", "--max-workers", "1",
            ])

        assert code == 1
        assert (out / "results.csv").exists()
        summary = json.loads((out / "run_summary.json").read_text())
        assert "AnnotationLookupError" in summary['enrichment']['error']

    def test_config_file_with_override(self, inputs, tmp_path):
        counts_path, metadata_path, _ = inputs
        out = tmp_path / "out"
        config_path = tmp_path / "analysis.yaml"
        config_path.write_text(
            f"counts: {counts_path}\n"
            f"metadata: {metadata_path}\n"
            f"output: {out}\n"
            "model:\n"
            "  baseline: control\n"
            "  covariates: [batch]\n"
            "significance:\n"
            "  fdr: 0.01\n"
        )

        code = main(["differential", "--config", str(config_path), "--fdr", "0.1"])

        assert code == 0
        summary = json.loads((out / "run_summary.json").read_text())
        assert summary['config']['significance']['fdr'] == 0.1
        assert summary['config']['model']['covariates'] == ["batch"]
        assert summary['design_columns'] == ["(Intercept)", "group[treated]", "batch[B]"]

    def test_missing_required_input(self, tmp_path, capsys):
        code = main(["differential", "-o", str(tmp_path / "out")])
        assert code == 1
        assert "--counts is required" in capsys.readouterr().out

    def test_invalid_config_file(self, tmp_path, capsys):
        config_path = tmp_path / "bad.yaml"
        config_path.write_text("filter:\n  min_cpm: -3\n")
        assert main(["differential", "--config", str(config_path)]) == 1
        assert "Config file error" in capsys.readouterr().out

    def test_missing_counts_file(self, inputs, tmp_path):
        _, metadata_path, _ = inputs
        code = main([
            "differential", "-c", str(tmp_path / "nope.csv"), "-m", str(metadata_path),
            "-o", str(tmp_path / "out"),
        ])
        assert code == 1

    def test_design_error_exit_code(self, inputs, tmp_path, capsys):
        counts_path, metadata_path, _ = inputs
        code = main([
            "differential", "-c", str(counts_path), "-m", str(metadata_path),
            "-o", str(tmp_path / "out"), "--baseline", "nonexistent",
        ])
        assert code == 1
        assert "DesignMatrixError" in capsys.readouterr().out
        assert not (tmp_path / "out" / "results.csv").exists()

    def test_unwritable_results_path(self, inputs, tmp_path, capsys):
        counts_path, metadata_path, _ = inputs
        out = tmp_path / "out"
        (out / "results.csv").mkdir(parents=True)

        code = main([
            "differential", "-c", str(counts_path), "-m", str(metadata_path),
            "-o", str(out), "--baseline", "control",
        ])

        assert code == 1
        assert "ERROR: Failed to write results table" in capsys.readouterr().out
        assert not (out / "run_summary.json").exists()

    def test_output_path_is_a_file(self, inputs, tmp_path, capsys):
        counts_path, metadata_path, _ = inputs
        out = tmp_path / "out"
        out.write_text("")

        code = main(["differential", "-c", str(counts_path), "-m", str(metadata_path), "-o", str(out)])

        assert code == 1
        assert "Cannot create output directory" in capsys.readouterr().out


class TestMain:

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "differential" in capsys.readouterr().out

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["--version"])
        assert exc.value.code == 0
        assert __version__ in capsys.readouterr().out

    def test_invalid_fraction_rejected_by_parser(self):
        with pytest.raises(SystemExit):
            main(["differential", "--min-sample-fraction", "0"])
