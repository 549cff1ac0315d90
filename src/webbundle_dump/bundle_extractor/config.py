"""Configuration schema for bundle extraction."""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from webbundle_dump.common import LoggingConfig, expand_path_variables


class ExtractionConfig(BaseModel):
    """Configuration for one extraction run."""

    model_config = ConfigDict(extra='forbid')

    input_path: Optional[str] = Field(
        default=None,
        description="Executable to extract from"
    )
    output_dir: str = Field(
        default="./extracted",
        description="Directory to write extracted files into"
    )
    arch_hint: Optional[str] = Field(
        default=None,
        description="Architecture slice for fat Mach-O files (e.g. arm64, x86_64)"
    )
    platform: Literal["auto", "windows", "macos", "linux"] = Field(
        default="auto",
        description="Expected target platform of the executable"
    )
    asset_table_fallback: bool = Field(
        default=False,
        description="Scan read-only data for an asset table when no archive is found"
    )
    max_entry_size_mb: int = Field(
        default=512,
        ge=1,
        description="Largest decompressed entry accepted"
    )
    verify_written: bool = Field(
        default=False,
        description="Verify written files against a CRC32 of the decoded bytes"
    )
    write_workers: int = Field(
        default=1,
        ge=1,
        le=64,
        description="Number of threads writing files"
    )
    fail_on_partial: bool = Field(
        default=False,
        description="Exit with a distinct code when some entries failed"
    )

    @field_validator('input_path', 'output_dir', mode='before')
    @classmethod
    def expand_paths(cls, v):
        """Expand ${VAR} in paths."""
        return expand_path_variables(v)

    @field_validator('platform', mode='before')
    @classmethod
    def normalize_platform(cls, v):
        if isinstance(v, str):
            return v.lower()
        return v

    @property
    def max_entry_size(self) -> int:
        return self.max_entry_size_mb * 1024 * 1024


class BundleExtractorConfig(BaseModel):
    """Root configuration for bundle extractor."""

    model_config = ConfigDict(extra='forbid')

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
