"""Stream Guard: scheduled OBS sessions with stop frame detection."""

APP_NAME = "Stream Guard"
__version__ = "1.0.0"
APP_DISPLAY = f"{APP_NAME} v{__version__}"
