from typing import Annotated

from annotated_types import Ge
from pydantic_settings import BaseSettings, SettingsConfigDict

from .task import FlowPolicy


class Config(BaseSettings):
    default_flow: FlowPolicy = FlowPolicy.SERIES
    """Policy used to compose the top level of a run that does not specify one."""

    watch_debounce: Annotated[int, Ge(0)] = 0
    """Delay in milliseconds before a watch-triggered run starts; changes seen in the
    meantime are folded into that run."""

    watch_recursive: bool = True
    """Whether watches also observe subdirectories of the pattern's root."""

    sync_in_thread: bool = True
    """Run plain (non-async, non-callback) task bodies in a worker thread."""

    model_config = SettingsConfigDict(env_prefix="TASKCOMPOSER_")
