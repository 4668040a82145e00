"""Build source connectors from pipeline stage declarations."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import ValidationError

from stagediff.adapters.files import FileStoreConnector, FileStoreSettings
from stagediff.adapters.http_feed import HttpFeedConnector, HttpFeedSettings
from stagediff.adapters.sqlalchemy import SqlTableConnector, SqlTableSettings
from stagediff.config.errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from stagediff.config.pipeline import StageConfig
    from stagediff.domain.ports.fetching import SourceConnector

type ConnectorBuilder = Callable[[StageConfig], SourceConnector]


# Connectors that push the window down receive the stage timezone.
def _http_feed(stage: StageConfig) -> SourceConnector:
    return HttpFeedConnector(
        settings=HttpFeedSettings.model_validate(stage.options),
        name=stage.stage_id,
        timezone=stage.schema.timezone,
    )


def _files(stage: StageConfig) -> SourceConnector:
    return FileStoreConnector(
        settings=FileStoreSettings.model_validate(stage.options),
        name=stage.stage_id,
    )


def _sql(stage: StageConfig) -> SourceConnector:
    return SqlTableConnector(
        settings=SqlTableSettings.model_validate(stage.options),
        name=stage.stage_id,
        timezone=stage.schema.timezone,
    )


CONNECTOR_KINDS: Mapping[str, ConnectorBuilder] = {
    "http_feed": _http_feed,
    "files": _files,
    "sql": _sql,
}


def build_connector(
    stage: StageConfig,
    builders: Mapping[str, ConnectorBuilder] = CONNECTOR_KINDS,
) -> SourceConnector:
    """Create the connector for ``stage`` from its ``kind`` and ``options``."""

    builder = builders.get(stage.kind)
    if builder is None:
        known = ", ".join(sorted(builders))
        raise ConfigurationError(
            f"Stage {stage.stage_id!r} has unknown kind {stage.kind!r} (expected one of: {known})"
        )
    try:
        return builder(stage)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid options for stage {stage.stage_id!r}:\n{exc}") from exc
