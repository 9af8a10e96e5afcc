import os
import sys

from yt_dlp.version import __version__ as ytdlp_version

APP_NAME = "Audiograb"


def get_runtime_info():
    return {
        "app_name": APP_NAME,
        "app_version": os.environ.get("AUDIOGRAB_VERSION", "0.0.0"),
        "python_version": sys.version.split()[0],
        "yt_dlp_version": ytdlp_version,
    }
