"""Built-in settings template used as the merge base for server payloads.

The server only sends values that differ from its own defaults, so every key
the editor knows about must be present here.
"""

from __future__ import annotations

from typing import Any, Dict

ALL_RENDERERS = "All renderers"

DEFAULT_SETTINGS: Dict[str, Any] = {
    "alternate_subtitles_folder": "",
    "alternate_thumb_folder": "",
    "append_profile_name": False,
    "atz_limit": 10000,
    "audio_bitrate": "448",
    "audio_channels": "6",
    "audio_remux_ac3": True,
    "audio_resample": True,
    "audio_thumbnails_method": "1",
    "auto_update": True,
    "autoload_external_subtitles": True,
    "automatic_maximum_bitrate": True,
    "chapter_interval": 5,
    "chapter_support": False,
    "disable_subtitles": False,
    "enable_archive_browsing": False,
    "engines": [],
    "engines_priority": [],
    "external_network": True,
    "ffmpeg_logging_level": "fatal",
    "folders": [],
    "folders_monitored": [],
    "fully_played_action": "1",
    "generate_thumbnails": True,
    "gpu_acceleration": False,
    "hide_empty_folders": False,
    "hide_extensions": True,
    "hostname": "",
    "ip_filter": "",
    "language": "en-US",
    "maximum_bitrate": 90,
    "maximum_video_buffer_size": 200,
    "minimized": False,
    "network_interface": "",
    "number_of_cpu_cores": 1,
    "port": 5001,
    "prettify_filenames": False,
    "renderer_default": "",
    "renderer_force_default": False,
    "resume": True,
    "selected_renderers": [ALL_RENDERERS],
    "server_engine": "0",
    "server_name": "Universal Media Server",
    "show_media_library_folder": True,
    "show_recently_played_folder": True,
    "show_server_settings_folder": False,
    "show_splash_screen": True,
    "show_transcode_folder": True,
    "sort_method": "4",
    "subs_info_level": "basic",
    "subtitles_codepage": "",
    "subtitles_color": "0xFFFFFFFF",
    "subtitles_font": "",
    "thumbnail_seek_position": "4",
    "use_cache": True,
}

# Top-level keys of the settings response that carry option lists for the
# form widgets rather than setting values.
SELECTION_KEYS: frozenset[str] = frozenset(
    {
        "allRendererNames",
        "audioCoverSuppliers",
        "enabledRendererNames",
        "ffmpegLoglevels",
        "fullyPlayedActions",
        "gpuAccelerationMethod",
        "networkInterfaces",
        "serverEngines",
        "sortMethods",
        "subtitlesCodepages",
        "subtitlesDepth",
        "subtitlesInfoLevels",
        "transcodingEngines",
        "transcodingEnginesPurposes",
    }
)
