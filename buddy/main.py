#!/usr/bin/env python3
"""
Buddy Voice Companion Main Entry Point

Handles:
- Configuration loading (.env, YAML, overlays)
- Audio device and provider initialization
- Terminal push-to-talk loop (Enter toggles the microphone)
- Graceful shutdown
"""

import argparse
import asyncio
import logging
import signal
import sys
import uuid
from dataclasses import asdict, replace
from typing import Optional

from dotenv import load_dotenv

from .config_manager import BuddyConfig, ConfigManager, ConfigurationError, EnvironmentType
from .session import SessionController, SessionMode, create_session_controller
from .store import JsonFileStore
from .structured_logging import session_id_var, setup_logging
from .usage_guardian import UsageRules

logger = logging.getLogger(__name__)

QUIT_COMMANDS = {"q", "quit", "exit"}


class BuddyApp:
    """Terminal front end around the session controller"""

    def __init__(self, config_manager: ConfigManager, child_name: Optional[str] = None,
                 age: Optional[int] = None):
        self.config_manager = config_manager
        self.child_name = child_name
        self.age = age
        self.config: Optional[BuddyConfig] = None
        self.controller: Optional[SessionController] = None
        self.backend = None
        self.shutdown_requested = False

    def initialize(self) -> None:
        config = self.config_manager.load_config()
        if self.child_name or self.age:
            config.session = replace(
                config.session,
                child_name=self.child_name or config.session.child_name,
                age_years=self.age or config.session.age_years,
            )
        self.config = config

        # Imported here so the rest of the package works without PortAudio
        from .audio import AudioBackend
        self.backend = AudioBackend(config.audio.input_device, config.audio.output_device)

        store = JsonFileStore(config.session.store_path)
        self.controller = create_session_controller(
            config, self.backend.microphone, self.backend.speaker, store
        )
        self.controller.on_state_changed = self._on_state_changed
        self.controller.on_transcription = lambda text: print(f"\n🧒 {text}")
        self.controller.on_response = lambda text: print(f"🤖 {text}")
        self.controller.on_notice = lambda kind, message: print(f"ℹ️  [{kind}] {message}")

        self.config_manager.add_reload_callback(self._on_config_reloaded)
        if config.development.enable_hot_reload:
            self.config_manager.enable_hot_reload()

        logger.info(f"Buddy ready for {config.session.child_name} "
                    f"(age {config.session.age_years}, {config.environment.value})")

    def _on_config_reloaded(self, config: BuddyConfig) -> None:
        """Apply parent-edited rules to the running session"""
        if self.controller is None:
            return
        self.controller.guardian.set_rules(UsageRules.from_dict(asdict(config.guardian)))
        self.controller.verbose_notices = (
            config.development.verbose_notices and config.environment != EnvironmentType.PRODUCTION
        )
        logger.info(f"Applied reloaded configuration (daily limit {config.guardian.daily_limit_min} min, "
                    f"bedtime {config.guardian.bedtime_start}-{config.guardian.bedtime_end})")

    def _on_state_changed(self, old: SessionMode, new: SessionMode) -> None:
        if new == SessionMode.RECORDING:
            print("🎤 Listening... press Enter to stop")
        elif new == SessionMode.IDLE:
            print("⏎  Press Enter to talk (q to quit)")

    def _setup_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._request_shutdown)
            except NotImplementedError:
                # Windows event loops have no signal handler support
                pass

    def _request_shutdown(self) -> None:
        logger.info("Shutdown requested")
        self.shutdown_requested = True

    async def _read_line(self) -> Optional[str]:
        loop = asyncio.get_running_loop()
        line = await loop.run_in_executor(None, sys.stdin.readline)
        return line if line else None

    async def run(self) -> None:
        self._setup_signal_handlers()
        await self.controller.greet()
        print("⏎  Press Enter to talk (q to quit)")

        while not self.shutdown_requested:
            line = await self._read_line()
            if line is None or line.strip().lower() in QUIT_COMMANDS:
                break

            if line.strip():
                self.controller.notify_user_input("key_press")
                continue

            if self.controller.mode == SessionMode.RECORDING:
                await self.controller.release_mic()
            else:
                await self.controller.press_mic()

    async def stop(self) -> None:
        if self.controller:
            await self.controller.shutdown()
            logger.info(f"Session statistics: {self.controller.get_statistics()}")
        self.config_manager.remove_reload_callback(self._on_config_reloaded)
        self.config_manager.disable_hot_reload()
        if self.backend:
            self.backend.cleanup()


def parse_arguments() -> argparse.Namespace:
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Buddy - a voice companion for children",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("--config", default=None, help="Path to configuration file")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.add_argument("--log-file", help="Path to log file")
    parser.add_argument("--child-name", help="Child's name (overrides configuration)")
    parser.add_argument("--age", type=int, help="Child's age in years (overrides configuration)")
    return parser.parse_args()


async def main() -> None:
    """Main function"""
    args = parse_arguments()
    load_dotenv()

    config_manager = ConfigManager(config_path=args.config)
    setup_logging(debug=args.debug, log_file=args.log_file)
    session_id_var.set(str(uuid.uuid4()))

    app = BuddyApp(config_manager, child_name=args.child_name, age=args.age)
    try:
        app.initialize()
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    try:
        await app.run()
    finally:
        await app.stop()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
