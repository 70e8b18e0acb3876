# -*- coding: utf-8 -*-
import pandas as pd
import pytest

from strandstate.core import GenomeLayout
from strandstate.exceptions import ConfigError
from strandstate import strandstate as cli

FORWARD = 0x0
REVERSE = 0x10

# per-bin totals of chr1 (10 bins of 1kb): mean 22, population variance 48, median 21
TOTALS = [20, 30, 16, 26, 12, 34, 22, 18, 28, 14]

CHR1 = GenomeLayout(names=("chr1",), lengths=(10_000,))


def binReads(b, count, flag):
    return [("chr1", b * 1000 + 10 * i, flag, 60) for i in range(count)]


@pytest.fixture
def strand_seq_bams(write_bam):
    balanced, switching = [], []
    for b, total in enumerate(TOTALS):
        balanced += binReads(b, total // 2, FORWARD) + binReads(b, total // 2, REVERSE)
        switching += binReads(b, total, FORWARD if b < 5 else REVERSE)
    # filtered reads only show up in the cell report
    balanced += [("chr1", 50, 0x400, 60), ("chr1", 60, FORWARD, 3)]
    return [
        write_bam("balanced.bam", balanced, layout=CHR1),
        write_bam("switching.bam", switching, layout=CHR1),
    ]


@pytest.mark.correctness
def test_end_to_end(tmp_path, strand_seq_bams):
    out = tmp_path / "counts.txt"
    info = tmp_path / "info.txt"
    sampleInfo = tmp_path / "samples.txt"
    removed = tmp_path / "removed.bed"
    exitCode = cli.main(
        strand_seq_bams
        + ["-w", "1000", "-o", str(out), "-i", str(info), "-S", str(sampleInfo), "-R", str(removed)]
    )
    assert exitCode == 0

    table = pd.read_csv(out, sep="\t", keep_default_na=False)
    assert len(table) == 2 * len(TOTALS)
    balanced = table[table["cell"] == "balanced"]
    switching = table[table["cell"] == "switching"]
    assert list(balanced["w"] + balanced["c"]) == TOTALS
    assert list(balanced["class"]) == ["WC"] * 10
    assert list(switching["class"]) == ["CC"] * 5 + ["WW"] * 5
    assert list(switching["c"].iloc[:5]) == TOTALS[:5]
    assert list(switching["w"].iloc[5:]) == TOTALS[5:]
    assert set(table["sample"]) == {"S1"}

    rows = [line for line in info.read_text().splitlines() if not line.startswith("#")]
    assert rows[1] == "S1\tbalanced\t21\t222\t0\t1\t1\t0\t220"
    assert rows[2] == "S1\tswitching\t21\t220\t0\t0\t0\t0\t220"

    sampleRows = sampleInfo.read_text().splitlines()
    assert sampleRows[1] == "S1\t2\t0.458333\t22,22\t48,48"

    assert removed.read_text().strip() == ""


def test_missing_input_is_fatal(tmp_path, strand_seq_bams):
    out = tmp_path / "counts.txt"
    exitCode = cli.main(strand_seq_bams + [str(tmp_path / "missing.bam"), "-w", "1000", "-o", str(out)])
    assert exitCode == 1
    assert not out.exists()


def test_ambiguous_sample_is_fatal(tmp_path, write_bam):
    bam = write_bam("two.bam", binReads(0, 5, FORWARD), sampleNames=("S1", "S2"), layout=CHR1)
    assert cli.main([bam, "-w", "1000", "-o", str(tmp_path / "counts.txt")]) == 1


def test_unwritable_count_table(tmp_path, strand_seq_bams):
    out = tmp_path / "no_such_dir" / "counts.txt"
    assert cli.main(strand_seq_bams + ["-w", "1000", "-o", str(out)]) == 2


def test_unwritable_optional_report_is_skipped(tmp_path, strand_seq_bams):
    out = tmp_path / "counts.txt"
    info = tmp_path / "no_such_dir" / "info.txt"
    assert cli.main(strand_seq_bams + ["-w", "1000", "-o", str(out), "-i", str(info)]) == 0
    assert out.exists()


def test_window_and_bins_conflict(tmp_path, strand_seq_bams):
    bedFile = tmp_path / "bins.bed"
    bedFile.write_text("chr1\t0\t5000\n")
    assert cli.main(strand_seq_bams + ["-w", "1000", "-b", str(bedFile)]) == 1


def test_no_inputs():
    assert cli.main([]) == 1


def test_variable_bins(tmp_path, strand_seq_bams):
    bedFile = tmp_path / "bins.bed"
    bedFile.write_text("chr1\t0\t5000\nchr1\t5000\t10000\n")
    out = tmp_path / "counts.txt"
    assert cli.main(strand_seq_bams + ["-b", str(bedFile), "-o", str(out)]) == 0
    table = pd.read_csv(out, sep="\t", keep_default_na=False)
    assert list(table["start"]) == [0, 5000, 0, 5000]
    assert list(table["w"] + table["c"]) == [sum(TOTALS[:5]), sum(TOTALS[5:])] * 2


def test_read_config_yaml(tmp_path):
    configFile = tmp_path / "config.yaml"
    configFile.write_text(
        "inputParams:\n"
        "  bamFiles: [a.bam, b.bam]\n"
        "samParams:\n"
        "  minMappingQuality: 20\n"
        "binParams.windowSize: 5000\n"
        "hmmParams:\n"
        "  expectedTransitions: 4\n"
        "outputParams:\n"
        "  countsFile: counts.txt\n"
    )
    config = cli.readConfig(str(configFile), {"samParams.minMappingQuality": 30, "hmmParams.numWorkers": None})
    assert config["bamFiles"] == ["a.bam", "b.bam"]
    assert config["samArgs"].minMappingQuality == 30
    assert config["binArgs"].windowSize == 5000
    assert config["binArgs"].binsFile is None
    assert config["hmmArgs"].expectedTransitions == 4.0
    assert config["hmmArgs"].numWorkers == 1
    assert config["outputArgs"].countsFile == "counts.txt"
    assert config["outputArgs"].cellInfoFile is None


@pytest.mark.parametrize(
    "overrides",
    [
        {"binParams.windowSize": 0},
        {"binParams.binsFile": "bins.bed", "binParams.excludeFile": "exclude.bed"},
        {"samParams.minMappingQuality": -1},
        {"hmmParams.initialProbs": [0.5, 0.5]},
        {"hmmParams.zeroBinMean": 0},
        {"hmmParams.numWorkers": 0},
        {"samParams.minMappingQuality": "high"},
        {"binParams.windowSize": "1Mb"},
        {"hmmParams.initialProbs": 0.5},
        {"filterParams.maxSDs": [3]},
    ],
)
def test_read_config_rejects(overrides):
    with pytest.raises(ConfigError):
        cli.readConfig({"inputParams": {"bamFiles": ["a.bam"]}}, overrides)


def test_read_config_bad_yaml(tmp_path):
    configFile = tmp_path / "config.yaml"
    configFile.write_text("inputParams: [unclosed\n")
    with pytest.raises(ConfigError):
        cli.readConfig(str(configFile))
    with pytest.raises(ConfigError):
        cli.readConfig(str(tmp_path / "missing.yaml"))


@pytest.mark.parametrize(
    "argv",
    [
        ["-w", "notanint", "a.bam"],
        ["--no-such-option", "a.bam"],
    ],
)
def test_usage_error_exits_with_one(argv):
    assert cli.main(argv) == 1


def test_help_exits_with_zero(capsys):
    assert cli.main(["--help"]) == 0
    assert "usage" in capsys.readouterr().out


def test_bad_config_value_exits_with_one(tmp_path, strand_seq_bams):
    configFile = tmp_path / "config.yaml"
    configFile.write_text("samParams:\n  minMappingQuality: high\n")
    out = tmp_path / "counts.txt"
    assert cli.main(strand_seq_bams + ["--config", str(configFile), "-o", str(out)]) == 1
    assert not out.exists()
