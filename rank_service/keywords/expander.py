"""Keyword template expansion.

Builds the cross product of templates x niche rows x locations, replacing a
niche placeholder with each row's core keyword and a location placeholder
with each location. Inputs are accepted the way a spreadsheet range arrives:
a flat list of cells or a list of rows of cells.

Ordering is part of the contract: location (outer), niche row (middle),
template (inner).
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from rank_service.errors import ValidationError


@dataclass(frozen=True)
class ExpandedKeyword:
    service: str
    location: str
    core_keyword: str
    keyword: str

    def as_row(self) -> list[str]:
        return [self.service, self.location, self.core_keyword, self.keyword]


def _cell(value: Any) -> str:
    return "" if value is None else str(value).strip()


def normalize_cells(arg: Any) -> list[str]:
    """Flatten a single value, a 1-D list or a 2-D range into non-empty strings."""
    if isinstance(arg, str) or not isinstance(arg, Sequence):
        v = _cell(arg)
        return [v] if v else []

    out: list[str] = []
    for entry in arg:
        if isinstance(entry, Sequence) and not isinstance(entry, str):
            out.extend(v for v in (_cell(c) for c in entry) if v)
        else:
            v = _cell(entry)
            if v:
                out.append(v)
    return out


def normalize_niche(arg: Any) -> list[tuple[str, str]]:
    """Validate niche rows as exactly two non-empty string columns.

    Raises ValidationError for anything else; a niche input is never
    silently reshaped.
    """
    if isinstance(arg, str) or not isinstance(arg, Sequence):
        raise ValidationError(
            "The niche input must be rows of two columns: [service, core_keyword]."
        )

    rows: list[tuple[str, str]] = []
    for i, row in enumerate(arg):
        if isinstance(row, str) or not isinstance(row, Sequence) or len(row) != 2:
            raise ValidationError(
                f"Niche row {i + 1} must have exactly 2 columns: [service, core_keyword]."
            )
        service, core = row
        if not isinstance(service, str) or not isinstance(core, str):
            raise ValidationError(f"Niche row {i + 1} must contain strings.")
        service, core = service.strip(), core.strip()
        if not service or not core:
            raise ValidationError(f"Niche row {i + 1} has an empty column.")
        rows.append((service, core))
    return rows


def expand_keywords(
    templates: Any,
    niche: Any,
    locations: Any,
    niche_placeholder: str,
    location_placeholder: str,
    *,
    extra_placeholders: Mapping[str, str] | None = None,
) -> list[ExpandedKeyword]:
    """Expand templates across niche rows and locations.

    Substitution is literal substring replacement (no regex), niche first,
    then location, then any extra placeholders such as a brand name. The
    final keyword is lower-cased.

    Raises:
        ValidationError: if templates, niche rows or locations are empty, a
            niche row is malformed, or a placeholder is empty after trimming.
    """
    tpl_list = normalize_cells(templates)
    loc_list = normalize_cells(locations)
    niche_rows = normalize_niche(niche)

    niche_ph = _cell(niche_placeholder)
    loc_ph = _cell(location_placeholder)

    if not tpl_list:
        raise ValidationError("No templates provided.")
    if not niche_rows:
        raise ValidationError("No niche rows provided. Expect two columns: service, core_keyword.")
    if not loc_list:
        raise ValidationError("No locations provided.")
    if not niche_ph:
        raise ValidationError("niche_placeholder is empty.")
    if not loc_ph:
        raise ValidationError("location_placeholder is empty.")

    extras = [(k, v) for k, v in (extra_placeholders or {}).items() if k.strip()]

    out: list[ExpandedKeyword] = []
    for location in loc_list:
        for service, core_keyword in niche_rows:
            for template in tpl_list:
                keyword = template.replace(niche_ph, core_keyword)
                keyword = keyword.replace(loc_ph, location)
                for ph, value in extras:
                    keyword = keyword.replace(ph.strip(), value)
                out.append(
                    ExpandedKeyword(
                        service=service,
                        location=location,
                        core_keyword=core_keyword,
                        keyword=keyword.lower(),
                    )
                )
    return out


def filter_niche_by_service(niche: Any, service: str) -> list[tuple[str, str]]:
    """Keep niche rows whose service contains `service` (case-insensitive)."""
    needle = service.strip().lower()
    if not needle:
        raise ValidationError("Service filter is empty.")
    return [row for row in normalize_niche(niche) if needle in row[0].lower()]
