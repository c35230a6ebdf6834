"""Settings registration for the batch pipeline, uploader and link converter."""

from sharepack.config import env
from sharepack.core.logger import setup_logger
from sharepack.core.settings_registry import (
    CheckboxField,
    NumberField,
    PasswordField,
    SelectField,
    TextField,
    register_settings,
)

logger = setup_logger(__name__)

logger.debug("Bootstrap configuration:")
for key in ["CONFIG_DIR", "LOG_DIR", "TMP_DIR", "DEBUG", "ENABLE_LOGGING"]:
    logger.debug(f"  {key}: {getattr(env, key)}")


_ARCHIVE_FORMAT_OPTIONS = [
    {"value": "7z", "label": "7-Zip"},
    {"value": "zip", "label": "ZIP"},
]

_ARCHIVE_LEVEL_OPTIONS = [
    {"value": "none", "label": "No compression"},
    {"value": "fast", "label": "Fast"},
    {"value": "normal", "label": "Normal"},
    {"value": "maximum", "label": "Maximum"},
    {"value": "ultra", "label": "Ultra"},
]


@register_settings("batch", "Batch Processing", order=10)
def batch_settings():
    """Phase toggles and archive options for batch runs."""
    return [
        CheckboxField(
            key="BATCH_TRANSFORM",
            label="Run Transform Phase",
            description="Run the transform collaborator on each item before archiving.",
            default=False,
        ),
        CheckboxField(
            key="BATCH_ARCHIVE",
            label="Run Archive Phase",
            default=True,
        ),
        CheckboxField(
            key="BATCH_UPLOAD",
            label="Run Upload Phase",
            default=True,
        ),
        CheckboxField(
            key="CONVERT_LINKS",
            label="Convert Upload Links",
            description="Hand uploaded links to the conversion service once uploads finish.",
            default=False,
        ),
        SelectField(
            key="ARCHIVE_FORMAT",
            label="Archive Format",
            options=_ARCHIVE_FORMAT_OPTIONS,
            default="7z",
        ),
        SelectField(
            key="ARCHIVE_LEVEL",
            label="Compression Level",
            options=_ARCHIVE_LEVEL_OPTIONS,
            default="normal",
        ),
        PasswordField(
            key="ARCHIVE_PASSWORD",
            label="Archive Password",
            description="Leave empty for an unprotected archive.",
            default="",
        ),
        TextField(
            key="ARCHIVE_OUTPUT_DIR",
            label="Archive Output Directory",
            description="Where archives are written. Defaults to the staging directory.",
            default="",
        ),
        TextField(
            key="ARCHIVE_PREFIX",
            label="Archive Name Prefix",
            default="[SHAREPACK]",
        ),
        NumberField(
            key="MAX_PARALLEL_ARCHIVES",
            label="Parallel Archive Jobs",
            default=4,
            min_value=1,
            max_value=16,
        ),
        TextField(
            key="TRANSFORM_COMMAND",
            label="Transform Command",
            description="Executable run as `<command> <path> <app_id>` for the transform phase.",
            default="",
        ),
        NumberField(
            key="TRANSFORM_TIMEOUT",
            label="Transform Timeout (seconds)",
            default=600,
            min_value=1,
        ),
        NumberField(
            key="PROGRESS_UPDATE_INTERVAL",
            label="Progress Update Interval (seconds)",
            description="Minimum time between forwarded progress updates for the same item.",
            default=0.2,
            min_value=0,
        ),
    ]


@register_settings("upload", "Upload", order=20)
def upload_settings():
    """1fichier upload client settings."""
    return [
        PasswordField(
            key="ONEFICHIER_API_KEY",
            label="1fichier API Key",
            default="",
        ),
        TextField(
            key="ONEFICHIER_API_URL",
            label="1fichier API URL",
            default="https://api.1fichier.com/v1",
        ),
        TextField(
            key="UPLOAD_USER_AGENT",
            label="Upload User Agent",
            default="sharepack/1.0",
        ),
        NumberField(
            key="UPLOAD_MAX_RETRIES",
            label="Upload Attempts",
            description="Attempts per item before the upload is marked failed.",
            default=3,
            min_value=1,
        ),
        NumberField(
            key="UPLOAD_RETRY_DELAY",
            label="Upload Retry Delay (seconds)",
            description="Multiplied by the attempt number between upload attempts.",
            default=2,
            min_value=0,
        ),
        NumberField(
            key="UPLOAD_POLL_ATTEMPTS",
            label="Processing Poll Attempts",
            description="How many times to ask for the download link while the host scans the file.",
            default=10,
            min_value=1,
        ),
        NumberField(
            key="UPLOAD_POLL_DELAY",
            label="Processing Poll Delay (seconds)",
            default=30,
            min_value=0,
        ),
        NumberField(
            key="UPLOAD_BANDWIDTH_LIMIT",
            label="Upload Bandwidth Limit (bytes/sec)",
            description="0 disables the limit. Shared between concurrent uploads.",
            default=0,
            min_value=0,
        ),
    ]


@register_settings("conversion", "Link Conversion", order=30)
def conversion_settings():
    """Link conversion service settings."""
    return [
        TextField(
            key="CONVERSION_API_URL",
            label="Conversion API URL",
            default="https://pydrive.harryeffingpotter.com/convert-1fichier",
        ),
        NumberField(
            key="CONVERSION_MAX_ATTEMPTS",
            label="Conversion Attempts",
            default=30,
            min_value=1,
        ),
        NumberField(
            key="CONVERSION_BASE_DELAY",
            label="Conversion Base Delay (seconds)",
            default=10,
            min_value=0,
        ),
        NumberField(
            key="CONVERSION_DELAY_STEP",
            label="Conversion Delay Step (seconds)",
            description="Added per attempt while the service reports the link is not ready.",
            default=2,
            min_value=0,
        ),
        NumberField(
            key="CONVERSION_MAX_DELAY",
            label="Conversion Max Delay (seconds)",
            default=60,
            min_value=0,
        ),
        NumberField(
            key="CONVERSION_TIMEOUT",
            label="Conversion Request Timeout (seconds)",
            default=30,
            min_value=1,
        ),
    ]
