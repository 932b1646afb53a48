"""Which provider scopes each application feature needs.

The scopes requested during OAuth are the union over every application, so a
single connection serves all of them.
"""

from typing import Dict, Iterable, List, Set

FEATURE_SCOPE_MAP: Dict[str, Dict[str, List[str]]] = {
    "google": {
        "file.upload": ["https://www.googleapis.com/auth/drive.file"],
        "file.download": ["https://www.googleapis.com/auth/drive.readonly"],
        "folder.browse": ["https://www.googleapis.com/auth/drive.readonly"],
        "file.share": ["https://www.googleapis.com/auth/drive.file"],
        "docs.create": ["https://www.googleapis.com/auth/documents"],
        "sheets.access": ["https://www.googleapis.com/auth/spreadsheets"],
        "calendar.read": ["https://www.googleapis.com/auth/calendar.readonly"],
        "calendar.write": ["https://www.googleapis.com/auth/calendar"],
        "calendar.events": ["https://www.googleapis.com/auth/calendar.events"],
        "meet.create": ["https://www.googleapis.com/auth/meetings.space.created"],
        "meet.read": ["https://www.googleapis.com/auth/meetings.space.readonly"],
    },
    "box": {
        "file.upload": ["root_readwrite"],
        "file.download": ["root_readonly"],
        "folder.browse": ["root_readonly"],
        "file.share": ["root_readwrite"],
    },
    "dropbox": {
        "file.upload": ["files.content.write", "files.metadata.write"],
        "file.download": ["files.content.read", "files.metadata.read"],
        "folder.browse": ["files.metadata.read"],
        "file.share": ["sharing.read", "sharing.write"],
    },
    "slack": {
        "send.message": ["chat:write", "users:read", "users:read.email", "team:read"],
        "create.channel": ["channels:write", "groups:write"],
        "post.channel": [
            "chat:write",
            "channels:read",
            "groups:read",
            "im:read",
            "mpim:read",
            "users:read",
            "users:read.email",
            "team:read",
        ],
        "upload.file": ["files:write"],
    },
}

_FILE_FEATURES = ["file.upload", "file.download"]

APP_FEATURES: Dict[str, Dict[str, List[str]]] = {
    "dashboard": {
        "google": [
            "file.upload",
            "file.download",
            "folder.browse",
            "file.share",
            "calendar.read",
            "calendar.write",
            "calendar.events",
            "meet.create",
            "meet.read",
        ],
        "box": ["file.upload", "file.download", "folder.browse", "file.share"],
        "dropbox": ["file.upload", "file.download", "folder.browse", "file.share"],
        "slack": ["send.message", "post.channel"],
    },
    "clipshow": {
        "google": ["file.upload", "file.download", "folder.browse", "docs.create"],
        "box": ["file.upload", "file.download", "folder.browse"],
        "dropbox": ["file.upload", "file.download", "folder.browse"],
        "slack": ["send.message", "post.channel"],
    },
    "cns": {
        "google": ["file.upload", "file.download", "folder.browse"],
        "box": _FILE_FEATURES,
        "dropbox": _FILE_FEATURES,
        "slack": [],
    },
    "cuesheet": {
        "google": ["file.upload", "file.download", "sheets.access"],
        "box": _FILE_FEATURES,
        "dropbox": _FILE_FEATURES,
        "slack": [],
    },
}

# Apps that only move files in and out
for _app in ("callsheet", "timecard", "iwm", "addressbook", "mobile", "bridge"):
    APP_FEATURES[_app] = {
        "google": _FILE_FEATURES,
        "box": _FILE_FEATURES,
        "dropbox": _FILE_FEATURES,
        "slack": [],
    }

# Scopes requested regardless of features, needed to identify the account
BASE_SCOPES: Dict[str, List[str]] = {
    "google": [
        "https://www.googleapis.com/auth/userinfo.email",
        "https://www.googleapis.com/auth/userinfo.profile",
    ],
    "dropbox": ["account_info.read"],
}


# Broader scopes that grant what narrower ones do; Box stores one collapsed scope
IMPLIED_SCOPES: Dict[str, Dict[str, List[str]]] = {
    "box": {"root_readwrite": ["root_readonly"]},
    "google": {
        "https://www.googleapis.com/auth/calendar": [
            "https://www.googleapis.com/auth/calendar.readonly",
            "https://www.googleapis.com/auth/calendar.events",
        ],
    },
}


def required_scopes(provider: str, features: Iterable[str]) -> List[str]:
    """Scopes needed by a set of features, sorted and de-duplicated."""
    scope_map = FEATURE_SCOPE_MAP.get(provider, {})
    scopes = set()
    for feature in features:
        scopes.update(scope_map.get(feature, []))
    return sorted(scopes)


def granted_scopes(provider: str, scopes: Iterable[str]) -> Set[str]:
    """Stored scopes plus the narrower scopes they imply."""
    implied = IMPLIED_SCOPES.get(provider, {})
    granted = set(scopes)
    for scope in list(granted):
        granted.update(implied.get(scope, []))
    return granted


def app_features(app: str, provider: str) -> List[str]:
    return list(APP_FEATURES.get(app, {}).get(provider, []))


def all_required_scopes(provider: str) -> List[str]:
    """Union of the scopes every application needs from a provider."""
    scopes = set(BASE_SCOPES.get(provider, []))
    for features in APP_FEATURES.values():
        scopes.update(required_scopes(provider, features.get(provider, [])))
    return sorted(scopes)
