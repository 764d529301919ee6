"""Runtime configuration from environment variables."""

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Host-specific toolchain locations and environment.

    All settings can be overridden via environment variables with COMPILERHUB_ prefix.
    Example: COMPILERHUB_CLANG_BIN=/opt/llvm/bin/clang

    Binaries given as bare names are resolved on PATH at job start.
    """

    model_config = SettingsConfigDict(
        env_prefix="COMPILERHUB_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Environment
    environment: Literal["development", "staging", "production"] = "development"

    # Native toolchains
    clang_bin: str = "clang"
    clangxx_bin: str = "clang++"
    go_bin: str = "go"
    gofmt_bin: str = "gofmt"
    javac_bin: str = "javac"
    javap_bin: str = "javap"
    swiftc_bin: str = "swiftc"

    # Embedded toolchains run under this interpreter (None = current interpreter)
    python_bin: str | None = None

    # util-linux unshare: network and mount namespaces for the sandbox
    unshare_bin: str = "unshare"

