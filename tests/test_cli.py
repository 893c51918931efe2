import pytest
import yaml

from humgen.cli.main import main


def test_init_writes_an_example_config(tmp_path, capsys):
    path = tmp_path.joinpath("humgen.yml")
    assert main(["init", f"--yml={path}"]) == 0
    config = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert config["genome"] == "GRCh38"
    assert set(config["resources"]) == {
        "process_low",
        "process_medium",
        "process_high",
    }
    assert main(["init", f"--yml={path}"]) == 0
    assert "The file exists" in capsys.readouterr().out


def test_samples_from_a_directory(read_dir, capsys):
    assert main(["samples", str(read_dir)]) == 0
    printed = yaml.safe_load(capsys.readouterr().out)
    assert [next(iter(d)) for d in printed] == ["S1", "S2"]
    assert printed[0]["S1"]["fq"] == [
        str(read_dir.joinpath("S1_R1.fastq.gz")),
        str(read_dir.joinpath("S1_R2.fastq.gz")),
    ]


def test_samples_from_the_config(config_dict, write_config, capsys):
    path = write_config(config_dict)
    assert main(["samples", f"--yml={path}"]) == 0
    printed = yaml.safe_load(capsys.readouterr().out)
    assert printed[0]["S1"]["status"] == 1
    assert printed[1]["S2"]["status"] == 0


@pytest.mark.parametrize(
    ("key", "value", "error"),
    [
        ("genome", "CHM13", "UnknownGenome"),
        ("failure_policy", "retry", "ConfigurationError"),
        ("input_dir", "/nonexistent/fastq", "InputDiscoveryError"),
    ],
)
def test_run_rejects_invalid_configuration(
    config_dict, write_config, tmp_path, capsys, key, value, error
):
    config_dict[key] = value
    path = write_config(config_dict)
    dest_dir = tmp_path.joinpath("out")
    assert main(["run", f"--yml={path}", f"--dest-dir={dest_dir}"]) == 2
    assert f"humgen: {error}:" in capsys.readouterr().err
    assert not dest_dir.joinpath("work").exists()


def test_missing_config_file(tmp_path, capsys):
    assert main(["run", f"--yml={tmp_path.joinpath('absent.yml')}"]) == 2
    assert "config file not found" in capsys.readouterr().err
