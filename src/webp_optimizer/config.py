from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping


CONFIG_FILE = Path("config.toml")

DEFAULT_EXTENSIONS: tuple[str, ...] = ("jpg", "jpeg", "png", "bmp", "tif", "tiff")


@dataclass(slots=True)
class SearchConfig:
    max_attempts: int = 8
    tolerance: int = 5
    lower_span: int = 20
    upper_span: int = 10


@dataclass(slots=True)
class RuntimeConfig:
    output_dir: Path | None = None
    work_dir: Path | None = None
    log_file: str = "log.jsonl"
    summary_csv: str = "summary.csv"
    target_width: int = 1600
    max_file_size_mb: int = 100
    encode_timeout_s: float = 5.0
    resize_timeout_s: float = 30.0
    parallelism: int = 1
    smart_mode: bool = True
    default_quality: int = 80
    enable_local_api: bool = False
    extensions: tuple[str, ...] = DEFAULT_EXTENSIONS
    search: SearchConfig = field(default_factory=SearchConfig)


@dataclass(slots=True)
class ToolsConfig:
    encoder: str = "auto"
    resizer: str = "auto"
    cwebp_path: str | None = None
    sips_path: str = "/usr/bin/sips"


@dataclass(slots=True)
class APIConfig:
    host: str = "127.0.0.1"
    port: int = 8000


@dataclass(slots=True)
class AppConfig:
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    api: APIConfig = field(default_factory=APIConfig)


def _read_toml(path: Path) -> Mapping[str, object]:
    if not path.exists():
        return {}
    with path.open("rb") as handle:
        return tomllib.load(handle)


def _optional_path(value: object | None) -> Path | None:
    if value is None or value == "":
        return None
    return Path(str(value))


def _tuple_of_strings(value: object | None, default: Iterable[str]) -> tuple[str, ...]:
    if not value:
        return tuple(default)
    if isinstance(value, str):
        return (value.lower().lstrip("."),)
    if isinstance(value, Iterable):
        return tuple(str(item).lower().lstrip(".") for item in value)
    raise TypeError(f"Unsupported extensions configuration: {value!r}")


def _build_search(data: Mapping[str, object] | None) -> SearchConfig:
    if not data:
        return SearchConfig()
    return SearchConfig(
        max_attempts=int(data.get("max_attempts", 8)),
        tolerance=int(data.get("tolerance", 5)),
        lower_span=int(data.get("lower_span", 20)),
        upper_span=int(data.get("upper_span", 10)),
    )


def _build_runtime(data: Mapping[str, object] | None) -> RuntimeConfig:
    if not data:
        return RuntimeConfig()
    search = _build_search(data.get("search") if isinstance(data.get("search"), Mapping) else None)
    return RuntimeConfig(
        output_dir=_optional_path(data.get("output_dir")),
        work_dir=_optional_path(data.get("work_dir")),
        log_file=str(data.get("log_file", "log.jsonl")),
        summary_csv=str(data.get("summary_csv", "summary.csv")),
        target_width=int(data.get("target_width", 1600)),
        max_file_size_mb=int(data.get("max_file_size_mb", 100)),
        encode_timeout_s=float(data.get("encode_timeout_s", 5.0)),
        resize_timeout_s=float(data.get("resize_timeout_s", 30.0)),
        parallelism=int(data.get("parallelism", 1)),
        smart_mode=bool(data.get("smart_mode", True)),
        default_quality=int(data.get("default_quality", 80)),
        enable_local_api=bool(data.get("enable_local_api", False)),
        extensions=_tuple_of_strings(data.get("extensions"), DEFAULT_EXTENSIONS),
        search=search,
    )


def _build_tools(data: Mapping[str, object] | None) -> ToolsConfig:
    if not data:
        return ToolsConfig()
    cwebp = data.get("cwebp_path")
    return ToolsConfig(
        encoder=str(data.get("encoder", "auto")),
        resizer=str(data.get("resizer", "auto")),
        cwebp_path=str(cwebp) if cwebp else None,
        sips_path=str(data.get("sips_path", "/usr/bin/sips")),
    )


def _build_api(data: Mapping[str, object] | None) -> APIConfig:
    if not data:
        return APIConfig()
    return APIConfig(host=str(data.get("host", "127.0.0.1")), port=int(data.get("port", 8000)))


def load_config(path: Path | None = None) -> AppConfig:
    path = path or CONFIG_FILE
    raw = _read_toml(path)
    runtime_data = raw.get("runtime") if isinstance(raw, Mapping) else None
    tools_data = raw.get("tools") if isinstance(raw, Mapping) else None
    api_data = raw.get("api") if isinstance(raw, Mapping) else None
    runtime = _build_runtime(runtime_data if isinstance(runtime_data, Mapping) else None)
    tools = _build_tools(tools_data if isinstance(tools_data, Mapping) else None)
    api = _build_api(api_data if isinstance(api_data, Mapping) else None)
    return AppConfig(runtime=runtime, tools=tools, api=api)


def dump_config(config: AppConfig) -> str:
    runtime = config.runtime
    payload = {
        "runtime": {
            "output_dir": str(runtime.output_dir) if runtime.output_dir else None,
            "work_dir": str(runtime.work_dir) if runtime.work_dir else None,
            "log_file": runtime.log_file,
            "summary_csv": runtime.summary_csv,
            "target_width": runtime.target_width,
            "max_file_size_mb": runtime.max_file_size_mb,
            "encode_timeout_s": runtime.encode_timeout_s,
            "resize_timeout_s": runtime.resize_timeout_s,
            "parallelism": runtime.parallelism,
            "smart_mode": runtime.smart_mode,
            "default_quality": runtime.default_quality,
            "enable_local_api": runtime.enable_local_api,
            "extensions": list(runtime.extensions),
            "search": {
                "max_attempts": runtime.search.max_attempts,
                "tolerance": runtime.search.tolerance,
                "lower_span": runtime.search.lower_span,
                "upper_span": runtime.search.upper_span,
            },
        },
        "tools": {
            "encoder": config.tools.encoder,
            "resizer": config.tools.resizer,
            "cwebp_path": config.tools.cwebp_path,
            "sips_path": config.tools.sips_path,
        },
        "api": {
            "host": config.api.host,
            "port": config.api.port,
        },
    }
    return json.dumps(payload, indent=2)
