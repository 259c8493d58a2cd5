"""
Evidence classification.
Advisory metadata only - never gates authorization or workflow.
"""
import os
from typing import Optional

CATEGORY_RULES = [
    ("Image", {".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp", ".svg", ".tiff", ".ico", ".heic", ".heif"},
     ("image/",)),
    ("Video", {".mp4", ".avi", ".mov", ".wmv", ".flv", ".mkv", ".webm", ".m4v"},
     ("video/",)),
    ("Document", {".pdf", ".doc", ".docx", ".txt", ".rtf", ".odt", ".xls", ".xlsx", ".ppt", ".pptx"},
     ("application/pdf", "application/msword", "application/vnd.openxmlformats-officedocument")),
    ("Audio", {".mp3", ".wav", ".ogg", ".m4a", ".flac", ".aac", ".wma"},
     ("audio/",)),
    ("Log", {".log", ".txt", ".csv", ".json", ".xml"},
     ("text/plain", "text/csv", "application/json", "application/xml")),
    ("Mobile Data", {".apk", ".ipa", ".db", ".sqlite", ".plist"},
     ("application/vnd.android.package-archive",)),
    ("Network Capture", {".pcap", ".pcapng", ".cap", ".dmp"},
     ("application/vnd.tcpdump.pcap",)),
]

# Filename hints used when neither extension nor MIME type is conclusive
NAME_HINTS = [
    (("screenshot", "photo"), "Image"),
    (("recording", "audio"), "Audio"),
    (("report", "statement"), "Document"),
    (("capture", "traffic"), "Network Capture"),
    (("mobile", "phone"), "Mobile Data"),
]


class ExtensionClassifier:

    def classify(self, file_name: str, mime_type: Optional[str]) -> str:
        name = (file_name or "").lower()
        mime = (mime_type or "").lower()
        extension = os.path.splitext(name)[1]

        for category, extensions, mime_prefixes in CATEGORY_RULES:
            if extension in extensions:
                return category
        for category, extensions, mime_prefixes in CATEGORY_RULES:
            if mime and mime.startswith(mime_prefixes):
                return category
        for hints, category in NAME_HINTS:
            if any(hint in name for hint in hints):
                return category
        return "Other"
