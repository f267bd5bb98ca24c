from dataclasses import dataclass
from typing import Optional

from models import File, HistoryEvent
from repository import Repository

UNITS = ["B", "KB", "MB", "GB", "TB"]


@dataclass(frozen=True)
class RequesterInfo:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


def client_ip(headers, fallback_host: Optional[str]) -> Optional[str]:
    forwarded = headers.get("X-Forwarded-For")
    return forwarded.split(",")[0].strip() if forwarded else fallback_host


def format_file_size(size: int) -> str:
    value = float(size or 0)
    unit = 0
    while value >= 1024 and unit < len(UNITS) - 1:
        value /= 1024
        unit += 1
    if unit == 0:
        return f"{int(value)} B"
    return f"{value:.2f} {UNITS[unit]}"


def record_event(repo: Repository, file: File, event: HistoryEvent, requester: RequesterInfo = None) -> None:
    requester = requester or RequesterInfo()
    repo.append_history(file.id, event, requester.ip_address, requester.user_agent)


def analytics_summary(repo: Repository) -> dict:
    """Totals shown on the admin dashboard."""
    file_count = repo.count_files()
    total_bytes = repo.total_size_bytes()
    average = total_bytes // file_count if file_count else 0
    return {
        "total_downloads": repo.count_events(HistoryEvent.DOWNLOAD),
        "file_count": file_count,
        "total_size_bytes": total_bytes,
        "total_size": format_file_size(total_bytes),
        "average_size": format_file_size(average),
    }
