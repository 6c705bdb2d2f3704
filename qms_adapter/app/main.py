import asyncio
import signal
from pathlib import Path
from typing import Any, Optional

import typer
from loguru import logger
from pydantic import ValidationError

from qms_adapter.app.composition import create_adapter_dependencies
from qms_adapter.app.config.settings import Settings
from qms_adapter.app.core import SERVICE_NAME
from qms_adapter.app.core.logging import configure_logging

app = typer.Typer(add_completion=False, help="Forward usage updates from AMQP to QMS.")


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def load_settings(env_file: Optional[Path] = None, **overrides: Any) -> Settings:
    """Build Settings from the environment/.env file; non-None overrides win."""
    values = {key: value for key, value in overrides.items() if value is not None}
    if env_file is not None:
        return Settings(_env_file=env_file, **values)
    return Settings(**values)


def _log_amqp_settings(settings: Settings) -> None:
    _log(
        "amqp_settings",
        exchange=settings.exchange_name,
        exchange_type=settings.exchange_type,
        reconnect=settings.reconnect,
        queue=settings.queue_name,
        prefetch_count=settings.prefetch_count,
        routing_key=settings.routing_key,
        ack_mode=settings.ack_mode.value,
        qms_enabled=settings.qms_enabled,
    )


async def run_adapter(settings: Settings) -> None:
    deps = create_adapter_dependencies(settings)
    shutdown = asyncio.Event()

    def request_shutdown() -> None:
        if not shutdown.is_set():
            _log("shutdown_signal")
            shutdown.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_shutdown)
        except NotImplementedError:
            pass

    try:
        await deps.connect()
        consumer_tag = await deps.start()
        _log("adapter_started", consumer_tag=consumer_tag)

        shutdown_task = asyncio.create_task(shutdown.wait())
        lost_task = asyncio.create_task(deps.channel.lost.wait())
        done, pending = await asyncio.wait(
            {shutdown_task, lost_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        if lost_task in done and not shutdown.is_set():
            raise RuntimeError("broker connection lost")
    finally:
        await deps.close()
        _log("adapter_stopped")


@app.command()
def run(
    env_file: Optional[Path] = typer.Option(
        None, "--env-file", "--config", help="Path to a .env file with adapter settings."
    ),
    queue: Optional[str] = typer.Option(None, "--queue", help="The AMQP queue name for this service."),
    routing_key: Optional[str] = typer.Option(
        None, "--routing-key", help="The routing key for incoming AMQP messages."
    ),
    reconnect: Optional[bool] = typer.Option(
        None, "--reconnect/--no-reconnect", help="Whether the AMQP client should reconnect on failure."
    ),
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="One of trace, debug, info, warn, error, fatal, or panic."
    ),
) -> None:
    """Consume usage updates and forward them to QMS until interrupted."""
    try:
        settings = load_settings(
            env_file,
            queue_name=queue,
            routing_key=routing_key,
            reconnect=reconnect,
            log_level=log_level,
        )
    except ValidationError as e:
        logger.error("invalid configuration: {}", e)
        raise typer.Exit(code=2)

    configure_logging(settings.log_level, json=settings.log_json)
    if env_file is not None:
        _log("config_loaded", path=str(env_file))
    _log_amqp_settings(settings)

    try:
        asyncio.run(run_adapter(settings))
    except KeyboardInterrupt:
        _log("adapter_interrupted")
    except Exception as e:
        logger.exception("adapter failed: {}", e)
        raise typer.Exit(code=1)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
