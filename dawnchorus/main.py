"""Main application entry point for DawnChorus."""

import sys
import time
import signal
import argparse
import logging
from pathlib import Path
from typing import List, Optional

from pubsub import pub

from dawnchorus import __version__
from dawnchorus.analysis import AnalysisPublisher, load_classifier
from dawnchorus.audio.audio_pub import LevelPublisher, StreamEventPublisher
from dawnchorus.audio.capture import list_audio_sources
from dawnchorus.audio.levels import LevelMonitor
from dawnchorus.errors import ConfigurationError
from dawnchorus.models.sources import Source
from dawnchorus.services import AnalysisService, StreamRegistry, make_producer_factory
from dawnchorus.storage import ClipExporter
from dawnchorus.ui import LevelScreen

from .config import DawnChorusConfig

logger = logging.getLogger(__name__)

CONFIG_CHANGED_TOPIC = "config.changed"
FILE_LOG_FORMAT = '%(asctime)s %(levelname)-8s [%(threadName)s] %(name)s.%(funcName)s:%(lineno)d %(message)s'
CONSOLE_LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s: %(message)s'


class CaptureServer:

    def __init__(self, config_path: Optional[str], log_level: Optional[str] = None):
        # Load configuration
        self.config = DawnChorusConfig(config_path)
        # Set up logging (command line overrides config)
        level = log_level or self.config.get('logging.level', 'INFO')
        setup_logging(self.config, level)
        self.should_exit = False
        self.reload_requested = False
        self.registry: Optional[StreamRegistry] = None
        self.analysis_service: Optional[AnalysisService] = None
        self.level_screen: Optional[LevelScreen] = None

    def init(self, show_levels: bool = False):
        logger.info("Initializing services...")

        self.audio_settings = self.config.get_audio_settings()
        analysis_settings = self.config.get_analysis_settings()
        decoder_settings = self.config.get_decoder_settings()
        level_settings = self.config.get_level_settings()

        logger.info(f"Audio settings: {self.audio_settings.sample_rate}Hz, "
                    f"{self.audio_settings.bit_depth}-bit, {self.audio_settings.channels} channels, "
                    f"{self.audio_settings.capture_seconds}s capture buffer")
        logger.info(f"Analysis window: {analysis_settings.window_seconds}s, "
                    f"overlap {analysis_settings.overlap_seconds}s")

        self.level_monitor = LevelMonitor(
            inactivity_threshold=level_settings.inactivity_seconds,
            floor_db=level_settings.floor_db,
            ceiling_db=level_settings.ceiling_db,
        )
        self.level_publisher = LevelPublisher(self.level_monitor, "audio.level", level_settings.queue_size)
        self.stream_events = StreamEventPublisher("stream.events")

        self.registry = StreamRegistry(
            audio=self.audio_settings,
            analysis=analysis_settings,
            producer_factory=make_producer_factory(self.audio_settings, decoder_settings),
            level_monitor=self.level_monitor,
            drain_timeout=decoder_settings.drain_timeout,
            event_callback=self.stream_events.publish,
        )
        self.clip_exporter = ClipExporter(self.registry, self.config.get_clip_directory())

        classifier_path = self.config.get('analysis.classifier')
        if classifier_path:
            self.analysis_publisher = AnalysisPublisher("analysis.results")
            self.analysis_service = AnalysisService(
                self.registry,
                load_classifier(classifier_path),
                self.audio_settings,
                analysis_settings,
                result_callback=self.analysis_publisher.get_callback(),
            )
        else:
            logger.warning("No classifier configured (analysis.classifier); windows will not be analyzed")

        if show_levels:
            self.level_screen = LevelScreen(self.level_monitor, self.registry)

        pub.subscribe(self.on_config_changed, CONFIG_CHANGED_TOPIC)

    def on_config_changed(self, sources: List[Source]) -> None:
        """Reconfigure the registry whenever a new desired source list is published."""
        result = self.registry.reconfigure(sources)
        for source_id, error in result.failed.items():
            logger.error(f"Source {source_id} not started: {error}")

    def reload_config(self) -> None:
        """Re-read the configuration file and publish the new source list."""
        try:
            self.config.reload()
            sources = self.config.get_desired_sources()
        except (ValueError, ConfigurationError) as e:
            logger.error(f"Configuration reload failed, keeping current sources: {e}")
            return
        logger.info(f"Configuration reloaded: {len(sources)} sources")
        pub.sendMessage(CONFIG_CHANGED_TOPIC, sources=sources)

    def _request_reload(self, signum, frame):
        self.reload_requested = True

    def _request_exit(self, signum, frame):
        self.should_exit = True

    def run(self, duration: Optional[int] = None):
        try:
            signal.signal(signal.SIGHUP, self._request_reload)
            signal.signal(signal.SIGTERM, self._request_exit)

            self.level_monitor.start_activity_checks()
            self.level_publisher.start()
            if self.analysis_service:
                self.analysis_service.start()
            pub.sendMessage(CONFIG_CHANGED_TOPIC, sources=self.config.get_desired_sources())
            if self.level_screen:
                self.level_screen.start()

            started = time.time()
            while not self.should_exit:
                if duration and time.time() - started >= duration:
                    break
                if self.reload_requested:
                    self.reload_requested = False
                    self.reload_config()
                time.sleep(1)
        except ConfigurationError as e:
            logger.error(f"Error in run: {e}")
        finally:
            self.cleanup()

    def cleanup(self):
        if self.level_screen:
            self.level_screen.stop()
        if self.analysis_service:
            self.analysis_service.shutdown()
        if self.registry:
            self.registry.shutdown()
        self.level_publisher.stop()
        self.level_monitor.stop()
        pub.unsubscribe(self.on_config_changed, CONFIG_CHANGED_TOPIC)


def _log_level(name, setting: str) -> int:
    if isinstance(name, int):
        return name
    value = logging.getLevelName(str(name).upper())
    if not isinstance(value, int):
        raise ConfigurationError(f"Unknown log level for {setting}: {name!r}")
    return value


def setup_logging(config, level: str = "INFO") -> None:
    """Send records to a DEBUG log file and, when enabled, to stdout.

    The root logger filters at ``level``. The console filters again at
    ``logging.console_level`` (WARNING unless configured) so a live level
    screen is not buried under routine stream messages.
    """
    root_level = _log_level(level, "log level")
    console_output = config.get('logging.console_output', True)
    console_level = _log_level(config.get('logging.console_level', 'WARNING'), 'logging.console_level')

    log_path = Path(config.get('logging.file_path', 'data/logs/dawnchorus.log'))
    log_path.parent.mkdir(parents=True, exist_ok=True)

    file_handler = logging.FileHandler(log_path)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT))
    handlers: List[logging.Handler] = [file_handler]

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(console_level)
        console_handler.setFormatter(logging.Formatter(CONSOLE_LOG_FORMAT))
        handlers.append(console_handler)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(root_level)
    for handler in handlers:
        root_logger.addHandler(handler)

    console = logging.getLevelName(console_level) if console_output else "off"
    logger.info(f"🐦 DawnChorus {__version__} logging to {log_path} "
                f"(level {logging.getLevelName(root_level)}, console {console})")


def print_audio_sources() -> None:
    """Print available capture devices."""
    print("Available Capture Sources:")
    for device in list_audio_sources():
        marker = " (default)" if device.is_default else ""
        print(f"  {device.index}: {device.name}, {device.max_input_channels} ch, "
              f"{device.default_sample_rate:.0f}Hz{marker}")


def main() -> None:
    """Main entry point for DawnChorus."""
    parser = argparse.ArgumentParser(
        description="DawnChorus - audio capture and buffering for bioacoustic monitoring",
        epilog="Send SIGHUP to reload the configuration file"
    )

    parser.add_argument(
        "--config",
        type=str,
        help="Path to configuration YAML file (default: ./dawnchorus.yaml)"
    )

    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Set logging level (default: from config, else INFO)"
    )

    parser.add_argument(
        "--duration",
        type=int,
        help="Stop after this many seconds (default: run until interrupted)"
    )

    parser.add_argument(
        "--show-levels",
        action="store_true",
        help="Display a live level meter for every source"
    )

    parser.add_argument(
        "--list-devices",
        action="store_true",
        help="List available capture devices and exit"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"DawnChorus v{__version__}"
    )

    args = parser.parse_args()

    if args.list_devices:
        print_audio_sources()
        return

    server = CaptureServer(args.config, args.log_level)
    try:
        server.init(show_levels=args.show_levels)
        server.run(args.duration)
    except KeyboardInterrupt:
        print("\n👋 Goodbye!")
    except Exception as e:
        print(f"❌ Error: {e}")
        logging.error(f"Application error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
