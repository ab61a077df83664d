"""
Offline timezone-to-country table.

Consulted before any network provider; a hit answers the lookup without
leaving the process.
"""

from typing import Dict, Optional, Tuple

US = ("United States", "US")
CA = ("Canada", "CA")
AU = ("Australia", "AU")

TIMEZONE_COUNTRIES: Dict[str, Tuple[str, str]] = {
    # United States
    "America/New_York": US,
    "America/Chicago": US,
    "America/Denver": US,
    "America/Los_Angeles": US,
    "America/Phoenix": US,
    "America/Anchorage": US,
    "America/Adak": US,
    "America/Honolulu": US,
    "America/Detroit": US,
    "America/Boise": US,
    "America/Indiana/Indianapolis": US,
    "America/Indiana/Knox": US,
    "America/Indiana/Marengo": US,
    "America/Indiana/Petersburg": US,
    "America/Indiana/Tell_City": US,
    "America/Indiana/Vevay": US,
    "America/Indiana/Vincennes": US,
    "America/Indiana/Winamac": US,
    "America/Kentucky/Louisville": US,
    "America/Kentucky/Monticello": US,
    "America/North_Dakota/Beulah": US,
    "America/North_Dakota/Center": US,
    "America/North_Dakota/New_Salem": US,
    "Pacific/Honolulu": US,

    # Canada
    "America/Toronto": CA,
    "America/Vancouver": CA,
    "America/Montreal": CA,
    "America/Halifax": CA,
    "America/Winnipeg": CA,
    "America/Regina": CA,
    "America/St_Johns": CA,

    # Europe
    "Europe/London": ("United Kingdom", "GB"),
    "Europe/Paris": ("France", "FR"),
    "Europe/Berlin": ("Germany", "DE"),
    "Europe/Rome": ("Italy", "IT"),
    "Europe/Madrid": ("Spain", "ES"),
    "Europe/Amsterdam": ("Netherlands", "NL"),
    "Europe/Zurich": ("Switzerland", "CH"),
    "Europe/Brussels": ("Belgium", "BE"),
    "Europe/Vienna": ("Austria", "AT"),
    "Europe/Stockholm": ("Sweden", "SE"),

    # Asia
    "Asia/Tokyo": ("Japan", "JP"),
    "Asia/Shanghai": ("China", "CN"),
    "Asia/Singapore": ("Singapore", "SG"),
    "Asia/Dubai": ("United Arab Emirates", "AE"),
    "Asia/Seoul": ("South Korea", "KR"),
    "Asia/Hong_Kong": ("Hong Kong", "HK"),
    "Asia/Taipei": ("Taiwan", "TW"),

    # Oceania
    "Australia/Sydney": AU,
    "Australia/Melbourne": AU,
    "Australia/Brisbane": AU,
    "Australia/Perth": AU,
    "Pacific/Auckland": ("New Zealand", "NZ"),
}


def country_for_timezone(timezone: Optional[str]) -> Optional[Tuple[str, str]]:
    """(country, country_code) for an IANA timezone name, or None."""
    if not timezone:
        return None
    return TIMEZONE_COUNTRIES.get(timezone.strip())
