"""Tests for the command-line interface."""

import pandas as pd
import yaml

from timescore.cli import build_parser, main


def test_parser_run():
    args = build_parser().parse_args(
        ["run", "--input", "in.h5ad", "--output", "out", "--cell-types", "NK", "B", "--seed", "5"]
    )

    assert args.command == "run"
    assert args.cell_types == ["NK", "B"]
    assert args.seed == 5
    assert not args.strict


def test_parser_preprocess_flags():
    args = build_parser().parse_args(
        ["preprocess", "--input", "raw.h5ad", "--output", "prep.h5ad", "--skip-qc", "--no-embed"]
    )
    assert args.skip_qc and args.no_embed


def test_no_command_prints_help(capsys):
    assert main([]) == 0
    assert "timescore" in capsys.readouterr().out


def test_missing_config_returns_error(tmp_path):
    code = main([
        "run",
        "--input", str(tmp_path / "in.h5ad"),
        "--output", str(tmp_path / "out"),
        "--config", str(tmp_path / "missing.yaml"),
    ])
    assert code == 1


def test_run_end_to_end(tmp_path, synthetic_adata):
    data_path = tmp_path / "prepared.h5ad"
    synthetic_adata.write_h5ad(data_path)

    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.safe_dump({"seed": 1, "signature": {"top_n": 10}}))

    output = tmp_path / "out"
    code = main([
        "run",
        "--input", str(data_path),
        "--output", str(output),
        "--config", str(config_path),
        "--cell-types", "NK",
    ])

    assert code == 0
    validation = pd.read_csv(output / "tables" / "validation_metrics.csv")
    assert set(validation["signature_type"]) == {"real", "random"}
    assert (output / "figures" / "roc_NK.pdf").exists()
