"""Tests for loaders and writers."""

import numpy as np
import pandas as pd
import pytest

from rnaseqde.exceptions import ValidationError
from rnaseqde.io.loaders import load_counts, load_sample_metadata, read_gmt
from rnaseqde.io.writers import write_enrichment_table, write_results_table
from rnaseqde.stats.differential import RESULT_COLUMNS
from rnaseqde.validation.enrichment_tests import ENRICHMENT_COLUMNS, EnrichmentResult


@pytest.fixture
def counts_csv(tmp_path):
    path = tmp_path / "counts.csv"
    path.write_text(
        "feature_id,S1,S2,S3\n"
        "g1,10,0,5\n"
        "g2,3,4,5\n"
    )
    return path


@pytest.fixture
def metadata_csv(tmp_path):
    path = tmp_path / "samples.csv"
    path.write_text(
        "sample_id,group\n"
        "S3,trt\n"
        "S1,ctrl\n"
        "S2,ctrl\n"
    )
    return path


class TestLoadCounts:

    def test_csv(self, counts_csv):
        counts = load_counts(counts_csv)
        assert counts.shape == (2, 3)
        assert list(counts.feature_ids) == ["g1", "g2"]
        np.testing.assert_array_equal(counts.library_sizes, [13, 4, 10])

    def test_tsv(self, tmp_path):
        path = tmp_path / "counts.tsv"
        path.write_text("id\tA\tB\ng1\t1\t2\n")
        counts = load_counts(path)
        assert list(counts.sample_ids) == ["A", "B"]

    def test_numeric_ids_become_strings(self, tmp_path):
        path = tmp_path / "counts.csv"
        path.write_text("id,1,2\n100,1,2\n200,3,4\n")
        counts = load_counts(path)
        assert list(counts.feature_ids) == ["100", "200"]
        assert list(counts.sample_ids) == ["1", "2"]

    def test_metadata_aligned_to_columns(self, counts_csv, metadata_csv):
        metadata = load_sample_metadata(metadata_csv)
        counts = load_counts(counts_csv, sample_metadata=metadata)
        assert list(counts.sample_metadata["group"]) == ["ctrl", "ctrl", "trt"]

    def test_metadata_mismatch(self, counts_csv, tmp_path):
        path = tmp_path / "samples.csv"
        path.write_text("sample_id,group\nS1,a\nS2,b\nS9,b\n")
        with pytest.raises(ValidationError, match="missing metadata"):
            load_counts(counts_csv, sample_metadata=load_sample_metadata(path))

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_counts(tmp_path / "nope.csv")

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.csv"
        path.write_text("")
        with pytest.raises(ValidationError, match="empty"):
            load_counts(path)

    def test_non_numeric_column(self, tmp_path):
        path = tmp_path / "counts.csv"
        path.write_text("id,S1,S2\ng1,1,abc\n")
        with pytest.raises(ValidationError, match="non-numeric"):
            load_counts(path)

    def test_negative_count(self, tmp_path):
        path = tmp_path / "counts.csv"
        path.write_text("id,S1,S2\ng1,1,-2\n")
        with pytest.raises(ValidationError, match="negative"):
            load_counts(path)

    def test_missing_value(self, tmp_path):
        path = tmp_path / "counts.csv"
        path.write_text("id,S1,S2\ng1,1,\ng2,3,4\n")
        with pytest.raises(ValidationError, match="missing"):
            load_counts(path)

    def test_fractional_count(self, tmp_path):
        path = tmp_path / "counts.csv"
        path.write_text("id,S1,S2\ng1,1.5,2\n")
        with pytest.raises(ValidationError, match="integer"):
            load_counts(path)

    def test_duplicate_feature(self, tmp_path):
        path = tmp_path / "counts.csv"
        path.write_text("id,S1,S2\ng1,1,2\ng1,3,4\n")
        with pytest.raises(ValidationError, match="Duplicate feature"):
            load_counts(path)


class TestLoadSampleMetadata:

    def test_index_named_sample_id(self, metadata_csv):
        metadata = load_sample_metadata(metadata_csv)
        assert metadata.index.name == "sample_id"
        assert metadata.loc["S3", "group"] == "trt"

    def test_duplicate_samples(self, tmp_path):
        path = tmp_path / "samples.csv"
        path.write_text("sample_id,group\nS1,a\nS1,b\n")
        with pytest.raises(ValidationError, match="duplicate"):
            load_sample_metadata(path)


class TestReadGMT:

    def test_parse(self, tmp_path):
        path = tmp_path / "sets.gmt"
        path.write_text("S1\tdesc one\tA\tB\tA\n\nS2\t\tC\n")
        assert read_gmt(path) == {"S1": ["A", "B"], "S2": ["C"]}

    def test_too_few_fields(self, tmp_path):
        path = tmp_path / "sets.gmt"
        path.write_text("S1\tdesc\n")
        with pytest.raises(ValidationError, match=":1:"):
            read_gmt(path)

    def test_duplicate_set(self, tmp_path):
        path = tmp_path / "sets.gmt"
        path.write_text("S1\td\tA\nS1\td\tB\n")
        with pytest.raises(ValidationError, match="duplicate gene set"):
            read_gmt(path)


class TestWriters:

    def _table(self):
        return pd.DataFrame({
            'feature_id': ["g1", "g2"],
            'logFC': [2.0, -1.0],
            'AveExpr': [5.0, 6.0],
            't': [4.0, -2.0],
            'P.Value': [0.001, 0.05],
            'adj.P.Val': [0.002, 0.05],
        })

    def test_results_table_round_trip(self, tmp_path):
        path = write_results_table(self._table(), tmp_path / "nested" / "results.csv")
        written = pd.read_csv(path)
        assert list(written.columns) == RESULT_COLUMNS
        assert list(written['feature_id']) == ["g1", "g2"]

    def test_results_table_missing_columns(self, tmp_path):
        with pytest.raises(ValueError, match="missing columns"):
            write_results_table(self._table().drop(columns=['t']), tmp_path / "r.csv")

    def test_enrichment_table(self, tmp_path):
        results = [EnrichmentResult("S1", 5, 2, 0.01, 1.0, 2.0, 0.02)]
        path = write_enrichment_table(results, tmp_path / "enrichment_up.csv")
        written = pd.read_csv(path)
        assert list(written.columns) == ENRICHMENT_COLUMNS
        assert written.loc[0, 'set_id'] == "S1"

    def test_empty_enrichment_table_has_header(self, tmp_path):
        path = write_enrichment_table([], tmp_path / "enrichment_down.csv")
        assert path.read_text().strip() == ",".join(ENRICHMENT_COLUMNS)
