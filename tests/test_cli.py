from __future__ import annotations

from pathlib import Path

from PIL import Image
from typer.testing import CliRunner

from webp_optimizer.cli import app

runner = CliRunner()


def write_config(tmp_path: Path) -> Path:
    path = tmp_path / "config.toml"
    path.write_text(
        f"""
[runtime]
work_dir = "{(tmp_path / 'work').as_posix()}"

[tools]
encoder = "pillow"
resizer = "pillow"
""",
        encoding="utf-8",
    )
    return path


def make_photos(folder: Path) -> None:
    folder.mkdir()
    gradient = Image.linear_gradient("L").resize((320, 240)).convert("RGB")
    gradient.save(folder / "gradient.png")
    Image.new("RGB", (320, 240), (30, 120, 200)).save(folder / "flat.jpg", quality=95)


def test_presets_lists_profiles() -> None:
    result = runner.invoke(app, ["presets"])
    assert result.exit_code == 0
    assert "Balanced" in result.stdout
    assert "email-friendly" in result.stdout


def test_batch_writes_webp_files(tmp_path: Path) -> None:
    folder = tmp_path / "photos"
    make_photos(folder)
    config = write_config(tmp_path)

    result = runner.invoke(
        app,
        ["batch", str(folder), "--width", "160", "--target-kb", "4", "--config", str(config)],
    )

    assert result.exit_code == 0, result.stdout
    output = tmp_path / "photos-optimized"
    assert sorted(path.name for path in output.glob("*.webp")) == ["flat.webp", "gradient.webp"]
    assert (output / "summary.csv").exists()
    assert "Processed 2 of 2" in result.stdout


def test_batch_rejects_unknown_preset(tmp_path: Path) -> None:
    folder = tmp_path / "photos"
    make_photos(folder)

    result = runner.invoke(app, ["batch", str(folder), "--preset", "tiny", "--config", str(write_config(tmp_path))])

    assert result.exit_code == 2


def test_show_config_prints_json(tmp_path: Path) -> None:
    result = runner.invoke(app, ["show-config", "--config", str(write_config(tmp_path))])
    assert result.exit_code == 0
    assert '"encoder": "pillow"' in result.stdout
