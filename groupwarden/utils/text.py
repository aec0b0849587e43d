# Copyright (c) 2025 sprouee


def format_template(template: str, user: str, group: str) -> str:
    """Подставить {user} и {group} в шаблон (буквальная замена)."""
    return (template or "").replace("{user}", str(user)).replace("{group}", str(group))


def format_duration(seconds: int) -> str:
    """Длительность в виде "1 д 2 ч 3 мин 4 с"."""
    seconds = max(0, int(seconds))
    days, rest = divmod(seconds, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, secs = divmod(rest, 60)

    parts = []
    if days:
        parts.append(f"{days} д")
    if hours:
        parts.append(f"{hours} ч")
    if minutes:
        parts.append(f"{minutes} мин")
    if secs or not parts:
        parts.append(f"{secs} с")
    return " ".join(parts)

