"""LINE message templates for repair notifications and chat replies.

Layout is built from a handful of node dataclasses and serialized to Flex
JSON by ``to_flex``. Renderers are pure: typed input in, message dict out.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Union
from urllib.parse import quote
from zoneinfo import ZoneInfo

from repairdesk.core.config import settings

if TYPE_CHECKING:
    from repairdesk.db.models import RepairTicket


# =============================================================================
# Palette and lookup tables
# =============================================================================

COLORS = {
    "CRITICAL": "#DC2626",
    "URGENT": "#EA580C",
    "NORMAL": "#16A34A",
    "SUCCESS": "#059669",
    "INFO": "#2563EB",
    "WARNING": "#D97706",
    "DANGER": "#EF4444",
    "PRIMARY": "#1E293B",
    "HEADER_DARK": "#0F172A",
    "SECTION_BG": "#F8FAFC",
    "LABEL": "#64748B",
    "SUBTLE": "#94A3B8",
    "FOOTER_BG": "#F1F5F9",
}


@dataclass(frozen=True)
class Style:
    color: str
    label: str


URGENCY_STYLES: dict[str, Style] = {
    "CRITICAL": Style(COLORS["CRITICAL"], "Most urgent"),
    "URGENT": Style(COLORS["URGENT"], "Urgent"),
    "NORMAL": Style(COLORS["NORMAL"], "Normal"),
}
DEFAULT_URGENCY_STYLE = URGENCY_STYLES["NORMAL"]

STATUS_STYLES: dict[str, Style] = {
    "PENDING": Style(COLORS["WARNING"], "Pending"),
    "ASSIGNED": Style(COLORS["INFO"], "Assigned"),
    "IN_PROGRESS": Style(COLORS["INFO"], "In progress"),
    "WAITING_PARTS": Style(COLORS["WARNING"], "Waiting for parts"),
    "COMPLETED": Style(COLORS["SUCCESS"], "Completed"),
    "CANCELLED": Style(COLORS["DANGER"], "Cancelled"),
}

# Row accent in the check-status list
URGENCY_ROW_COLORS: dict[str, str] = {
    "NORMAL": "#D1D5DB",
    "URGENT": "#FBBF24",
    "CRITICAL": "#EF4444",
}

TECHNICIAN_HEADLINES: dict[str, str] = {
    "ASSIGNED": "New job assigned to you",
    "TRANSFERRED": "A job was transferred to you",
    "CLAIMED": "You picked up a repair job",
}

BRAND = "Repair Desk"


def _key(value) -> str:
    return getattr(value, "value", value) or ""


def urgency_style(urgency) -> Style:
    return URGENCY_STYLES.get(_key(urgency), DEFAULT_URGENCY_STYLE)


def status_style(status) -> Style:
    """Known statuses map to their style; anything else shows the raw value."""
    key = _key(status)
    return STATUS_STYLES.get(key, Style(COLORS["PRIMARY"], key))


def technician_headline(kind) -> str:
    return TECHNICIAN_HEADLINES.get(_key(kind), TECHNICIAN_HEADLINES["ASSIGNED"])


# =============================================================================
# Layout nodes
# =============================================================================


@dataclass(frozen=True)
class UriAction:
    label: str
    uri: str


@dataclass(frozen=True)
class PostbackAction:
    label: str
    data: str
    display_text: str | None = None


Action = Union[UriAction, PostbackAction]


@dataclass(frozen=True)
class Text:
    text: str
    size: str = "sm"
    color: str | None = None
    weight: str | None = None
    wrap: bool = True
    flex: int | None = None
    align: str | None = None
    action: Action | None = None


@dataclass(frozen=True)
class Separator:
    margin: str = "md"


@dataclass(frozen=True)
class Badge:
    label: str
    color: str
    text_color: str = "#FFFFFF"


@dataclass(frozen=True)
class Row:
    """Label/value pair on one line."""

    label: str
    value: str
    bold: bool = False


@dataclass(frozen=True)
class Image:
    url: str
    aspect_ratio: str = "20:13"


@dataclass(frozen=True)
class Button:
    action: Action
    style: str = "primary"
    color: str | None = None


@dataclass(frozen=True)
class Box:
    contents: list
    layout: str = "vertical"
    spacing: str | None = None
    margin: str | None = None
    background: str | None = None
    padding: str | None = None
    corner_radius: str | None = None
    flex: int | None = None
    action: Action | None = None


@dataclass(frozen=True)
class Bubble:
    body: Box
    header: Box | None = None
    hero: Image | None = None
    footer: Box | None = None
    size: str = "mega"


@dataclass(frozen=True)
class Carousel:
    bubbles: list[Bubble] = field(default_factory=list)


Node = Union[Text, Separator, Badge, Row, Image, Button, Box, Bubble, Carousel]


def _action_to_flex(action: Action) -> dict:
    if isinstance(action, UriAction):
        return {"type": "uri", "label": action.label, "uri": action.uri}
    data = {"type": "postback", "label": action.label, "data": action.data}
    if action.display_text:
        data["displayText"] = action.display_text
    return data


def _drop_none(data: dict) -> dict:
    return {k: v for k, v in data.items() if v is not None}


def to_flex(node: Node) -> dict:
    """Serialize a layout node tree to LINE Flex JSON."""
    if isinstance(node, Text):
        return _drop_none({
            "type": "text",
            "text": node.text or "-",
            "size": node.size,
            "color": node.color,
            "weight": node.weight,
            "wrap": node.wrap,
            "flex": node.flex,
            "align": node.align,
            "action": _action_to_flex(node.action) if node.action else None,
        })
    if isinstance(node, Separator):
        return {"type": "separator", "margin": node.margin}
    if isinstance(node, Badge):
        return {
            "type": "box",
            "layout": "vertical",
            "backgroundColor": node.color,
            "cornerRadius": "md",
            "paddingAll": "4px",
            "flex": 0,
            "contents": [
                {
                    "type": "text",
                    "text": node.label,
                    "color": node.text_color,
                    "size": "xxs",
                    "weight": "bold",
                    "align": "center",
                }
            ],
        }
    if isinstance(node, Row):
        return {
            "type": "box",
            "layout": "horizontal",
            "spacing": "sm",
            "contents": [
                {"type": "text", "text": node.label, "size": "sm", "color": COLORS["LABEL"], "flex": 3},
                _drop_none({
                    "type": "text",
                    "text": node.value or "-",
                    "size": "sm",
                    "color": COLORS["PRIMARY"],
                    "flex": 5,
                    "wrap": True,
                    "weight": "bold" if node.bold else None,
                }),
            ],
        }
    if isinstance(node, Image):
        return {
            "type": "image",
            "url": node.url,
            "size": "full",
            "aspectRatio": node.aspect_ratio,
            "aspectMode": "cover",
        }
    if isinstance(node, Button):
        return _drop_none({
            "type": "button",
            "style": node.style,
            "height": "sm",
            "color": node.color,
            "action": _action_to_flex(node.action),
        })
    if isinstance(node, Box):
        return _drop_none({
            "type": "box",
            "layout": node.layout,
            "contents": [to_flex(child) for child in node.contents],
            "spacing": node.spacing,
            "margin": node.margin,
            "backgroundColor": node.background,
            "paddingAll": node.padding,
            "cornerRadius": node.corner_radius,
            "flex": node.flex,
            "action": _action_to_flex(node.action) if node.action else None,
        })
    if isinstance(node, Bubble):
        return _drop_none({
            "type": "bubble",
            "size": node.size,
            "header": to_flex(node.header) if node.header else None,
            "hero": to_flex(node.hero) if node.hero else None,
            "body": to_flex(node.body),
            "footer": to_flex(node.footer) if node.footer else None,
        })
    if isinstance(node, Carousel):
        return {"type": "carousel", "contents": [to_flex(b) for b in node.bubbles]}
    raise TypeError(f"Unsupported layout node: {type(node).__name__}")


def flex_message(alt_text: str, container: Bubble | Carousel) -> dict:
    return {"type": "flex", "altText": alt_text[:400], "contents": to_flex(container)}


def text_message(text: str) -> dict:
    return {"type": "text", "text": text}


# =============================================================================
# Render inputs
# =============================================================================


@dataclass(frozen=True)
class TicketSummary:
    """The ticket fields a notification card shows."""

    ticket_id: int
    ticket_code: str
    problem_title: str
    problem_description: str | None
    urgency: str
    status: str
    reporter_name: str
    department: str | None
    location: str | None
    reporter_phone: str | None = None
    created_at: datetime | None = None
    image_url: str | None = None

    @classmethod
    def from_ticket(cls, ticket: RepairTicket) -> TicketSummary:
        image_url = ticket.attachments[0].file_url if ticket.attachments else None
        return cls(
            ticket_id=ticket.id,
            ticket_code=ticket.ticket_code,
            problem_title=ticket.problem_title,
            problem_description=ticket.problem_description,
            urgency=_key(ticket.urgency),
            status=_key(ticket.status),
            reporter_name=ticket.reporter_name,
            department=ticket.reporter_department,
            location=ticket.location,
            reporter_phone=ticket.reporter_phone,
            created_at=ticket.created_at,
            image_url=image_url,
        )


@dataclass(frozen=True)
class StatusUpdate:
    """A reporter-facing status change."""

    status: str
    remark: str | None = None
    message_to_reporter: str | None = None
    technician_names: list[str] = field(default_factory=list)
    updated_at: datetime | None = None


@dataclass(frozen=True)
class CheckStatusItem:
    ticket_code: str
    problem_title: str
    status: str
    urgency: str
    created_at: datetime | None


# =============================================================================
# Helpers
# =============================================================================


def format_timestamp(moment: datetime | None) -> str:
    if moment is None:
        return "-"
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=ZoneInfo("UTC"))
    local = moment.astimezone(ZoneInfo(settings.DESK_TIMEZONE))
    return local.strftime("%d/%m/%Y %H:%M")


def staff_ticket_url(ticket_id: int) -> str:
    return f"{settings.frontend_base_url}/login/admin?ticketId={ticket_id}"


def track_url(ticket_code: str) -> str:
    return f"{settings.frontend_base_url}/repairs/track/{quote(ticket_code)}"


def intake_form_url(line_user_id: str) -> str:
    return f"{settings.frontend_base_url}/repairs/liff/form?lineUserId={quote(line_user_id)}"


def _header(title: str, color: str, badge: Badge | None = None) -> Box:
    contents: list = [Text(title, size="lg", color="#FFFFFF", weight="bold", flex=1)]
    if badge:
        contents.append(badge)
    return Box(contents, layout="horizontal", background=color, padding="16px")


def _section(label: str, value: str | None, label_color: str = COLORS["LABEL"], background: str = COLORS["SECTION_BG"]) -> Box:
    return Box(
        [Text(label, size="xs", color=label_color, weight="bold"), Text(value or "-", size="sm")],
        background=background,
        padding="12px",
        corner_radius="md",
        margin="md",
    )


def _reporter_rows(summary: TicketSummary) -> Box:
    return Box(
        [
            Row("Reporter", summary.reporter_name),
            Row("Department", summary.department or "-"),
            Row("Location", summary.location or "-"),
        ],
        spacing="sm",
        margin="lg",
    )


def _brand_footer(caption: str, buttons: list[Button] | None = None) -> Box:
    contents: list = list(buttons or [])
    contents.append(
        Box(
            [
                Text(caption, size="xxs", color=COLORS["SUBTLE"], flex=3),
                Text(BRAND, size="xxs", color="#CBD5E1", weight="bold", align="end", flex=2),
            ],
            layout="horizontal",
            margin="md",
        )
    )
    return Box(contents, spacing="sm", background=COLORS["FOOTER_BG"], padding="12px")


def _staff_buttons(summary: TicketSummary, manage_label: str = "Manage job") -> list[Button]:
    buttons = []
    if summary.reporter_phone:
        buttons.append(
            Button(UriAction("Call reporter", f"tel:{summary.reporter_phone}"), style="secondary")
        )
    buttons.append(
        Button(UriAction(manage_label, staff_ticket_url(summary.ticket_id)), color=COLORS["PRIMARY"])
    )
    return buttons


# =============================================================================
# Staff / technician cards
# =============================================================================


def render_new_ticket(summary: TicketSummary) -> dict:
    """Card broadcast to IT staff when a ticket is filed."""
    urgency = urgency_style(summary.urgency)
    body = Box(
        [
            Text(summary.ticket_code, size="xl", weight="bold"),
            _section("Problem", summary.problem_title),
            _section("Details", summary.problem_description),
            _reporter_rows(summary),
        ],
    )
    bubble = Bubble(
        header=_header("New repair request", urgency.color, Badge(urgency.label, COLORS["HEADER_DARK"])),
        hero=Image(summary.image_url) if summary.image_url else None,
        body=body,
        footer=_brand_footer(
            f"Reported {format_timestamp(summary.created_at)}", _staff_buttons(summary)
        ),
    )
    return flex_message(f"New repair request {summary.ticket_code}", bubble)


def render_technician_assignment(
    summary: TicketSummary, kind: str = "ASSIGNED", admin_note: str | None = None
) -> dict:
    headline = technician_headline(kind)
    urgency = urgency_style(summary.urgency)
    contents: list = [
        Text(summary.ticket_code, size="xl", weight="bold"),
        _section("Problem", summary.problem_title),
    ]
    if admin_note:
        contents.append(_section("Note from admin", admin_note, "#9A3412", "#FFF7ED"))
    contents.append(_reporter_rows(summary))
    bubble = Bubble(
        header=_header(headline, urgency.color, Badge(urgency.label, COLORS["HEADER_DARK"])),
        body=Box(contents),
        footer=_brand_footer(
            f"Reported {format_timestamp(summary.created_at)}", _staff_buttons(summary)
        ),
    )
    return flex_message(f"{headline} {summary.ticket_code}", bubble)


def render_technician_completion(
    summary: TicketSummary, completion_note: str | None = None, completed_at: datetime | None = None
) -> dict:
    contents: list = [
        Text(summary.ticket_code, size="xl", weight="bold"),
        _section("Job", summary.problem_title),
    ]
    if completion_note:
        contents.append(_section("Completion summary", completion_note, "#15803D", "#F0FDF4"))
    contents.append(_reporter_rows(summary))
    bubble = Bubble(
        header=_header("Job closed", COLORS["SUCCESS"], Badge("Completed", "#DCFCE7", "#166534")),
        body=Box(contents),
        footer=_brand_footer(
            f"Closed {format_timestamp(completed_at)}",
            [Button(UriAction("View job", staff_ticket_url(summary.ticket_id)), color=COLORS["PRIMARY"])],
        ),
    )
    return flex_message(f"Repair {summary.ticket_code} closed", bubble)


def render_technician_cancellation(
    summary: TicketSummary, reason: str | None = None, cancelled_at: datetime | None = None
) -> dict:
    contents: list = [
        Text(summary.ticket_code, size="xl", weight="bold"),
        _section("Job", summary.problem_title),
    ]
    if reason:
        contents.append(_section("Cancellation reason", reason, "#B91C1C", "#FEF2F2"))
    contents.append(_reporter_rows(summary))
    bubble = Bubble(
        header=_header("Repair cancelled", COLORS["DANGER"], Badge("Cancelled", "#FEE2E2", "#991B1B")),
        body=Box(contents),
        footer=_brand_footer(
            f"Cancelled {format_timestamp(cancelled_at)}",
            [Button(UriAction("View job", staff_ticket_url(summary.ticket_id)), color=COLORS["PRIMARY"])],
        ),
    )
    return flex_message(f"Repair {summary.ticket_code} cancelled", bubble)


def render_rush_reminder(summary: TicketSummary, waiting_since: datetime | None = None) -> dict:
    bubble = Bubble(
        header=_header("Reporter is asking for an update", COLORS["CRITICAL"], Badge("Rush", COLORS["HEADER_DARK"])),
        body=Box(
            [
                Text(summary.ticket_code, size="xl", weight="bold"),
                _section("Problem", summary.problem_title),
                Row("Current status", status_style(summary.status).label, bold=True),
                _reporter_rows(summary),
            ],
        ),
        footer=_brand_footer(
            f"Open since {format_timestamp(waiting_since or summary.created_at)}",
            _staff_buttons(summary, "Open job"),
        ),
    )
    return flex_message(f"Rush request {summary.ticket_code}", bubble)


# =============================================================================
# Reporter cards
# =============================================================================


def render_status_update(summary: TicketSummary, update: StatusUpdate) -> dict:
    """Status card for a reporter reached through their linked account."""
    style = status_style(update.status)
    contents: list = [
        Row("Ticket", summary.ticket_code, bold=True),
        Row("Problem", summary.problem_title),
        Row("Technician", ", ".join(update.technician_names) or "Not assigned yet"),
    ]
    if update.remark:
        contents.append(_section("Additional notes", update.remark))
    bubble = Bubble(
        header=_header("Status update", style.color, Badge(style.label, COLORS["HEADER_DARK"])),
        body=Box(contents, spacing="sm"),
        footer=_brand_footer(
            f"Updated {format_timestamp(update.updated_at)}",
            [Button(UriAction("Track repair", track_url(summary.ticket_code)), color=COLORS["PRIMARY"])],
        ),
    )
    return flex_message(f"Status update {summary.ticket_code}", bubble)


def render_reporter_direct(summary: TicketSummary, update: StatusUpdate) -> dict:
    """Richer status card for a reporter reached through the ticket's own LINE identity."""
    style = status_style(update.status)
    contents: list = [
        Row("Ticket number", summary.ticket_code, bold=True),
        Separator(),
        _section("Reported problem", summary.problem_title),
    ]
    if summary.problem_description:
        contents.append(_section("Details", summary.problem_description))
    if update.technician_names:
        contents.append(Row("Technician", ", ".join(update.technician_names)))
    if update.message_to_reporter:
        contents.append(_section("Message from staff", update.message_to_reporter, "#9A3412", "#FFF7ED"))
    elif update.remark:
        contents.append(_section("Additional notes", update.remark))
    bubble = Bubble(
        header=Box(
            [
                Text("Repair status", size="xs", color="#FFFFFFCC", weight="bold"),
                Text(style.label, size="xl", color="#FFFFFF", weight="bold"),
            ],
            background=style.color,
            padding="16px",
        ),
        body=Box(contents, spacing="sm"),
        footer=_brand_footer(
            f"Reported {format_timestamp(summary.created_at)}",
            [Button(UriAction("Track repair", track_url(summary.ticket_code)), color=COLORS["PRIMARY"])],
        ),
    )
    return flex_message(f"Status update {summary.ticket_code}", bubble)


def render_check_status(
    items: list[CheckStatusItem], page: int, total_pages: int
) -> dict:
    """Paged list of a reporter's tickets with prev/next postbacks."""
    rows: list = [
        Box(
            [
                Text("Reported", size="xxs", color=COLORS["LABEL"], weight="bold", flex=3),
                Text("Problem", size="xxs", color=COLORS["LABEL"], weight="bold", flex=5),
                Text("Status", size="xxs", color=COLORS["LABEL"], weight="bold", flex=3, align="center"),
            ],
            layout="horizontal",
        ),
        Separator(),
    ]
    for item in items:
        style = status_style(item.status)
        rows.append(
            Box(
                [
                    Box([], background=URGENCY_ROW_COLORS.get(_key(item.urgency), URGENCY_ROW_COLORS["NORMAL"]), flex=0, padding="2px"),
                    Text(format_timestamp(item.created_at), size="xxs", flex=3),
                    Text(item.problem_title, size="xs", flex=5),
                    Text(style.label, size="xxs", color=style.color, weight="bold", flex=3, align="center"),
                ],
                layout="horizontal",
                spacing="sm",
                margin="md",
                action=UriAction("Details", track_url(item.ticket_code)),
            )
        )

    nav: list = []
    if page > 1:
        nav.append(Button(PostbackAction("Previous", f"action=check_status&page={page - 1}"), style="secondary"))
    nav.append(Text(f"{page}-{total_pages}", size="xs", color=COLORS["SUBTLE"], align="center", flex=1))
    if page < total_pages:
        nav.append(Button(PostbackAction("Next", f"action=check_status&page={page + 1}"), style="secondary"))

    bubble = Bubble(
        header=_header("Repair history", COLORS["HEADER_DARK"]),
        body=Box(rows, spacing="sm"),
        footer=Box(nav, layout="horizontal", spacing="sm", background=COLORS["FOOTER_BG"], padding="12px"),
        size="giga",
    )
    return flex_message("Your repair requests", bubble)


# =============================================================================
# Chat replies
# =============================================================================


def render_welcome() -> dict:
    return text_message(
        f"Welcome to {BRAND}!\n\n"
        f"Type \"{settings.LINE_REPAIR_KEYWORD}\" or use the menu below to report a problem, "
        "and check the status of your requests at any time."
    )


def render_help() -> dict:
    return text_message(
        "How can we help?\n\n"
        f"- Type \"{settings.LINE_REPAIR_KEYWORD}\" to report a problem\n"
        "- Send your linking code (for example TRR-10022569001-AB12) to receive updates\n"
        "- Use the menu to check the status of your requests"
    )


def render_faq() -> dict:
    return text_message(
        "Frequently asked questions\n\n"
        "Q: How long does a repair take?\n"
        "A: Most requests are picked up within one working day.\n\n"
        "Q: How do I follow my request?\n"
        "A: Tap \"Check status\" in the menu or open the tracking link in your updates."
    )


def render_contact() -> dict:
    phone = settings.LINE_HELPDESK_PHONE or "-"
    return text_message(f"IT help desk\nPhone: {phone}\nOffice hours: Mon-Fri 08:30-16:30")


def render_intake_link(line_user_id: str) -> dict:
    return text_message(f"Report a problem here:\n{intake_form_url(line_user_id)}")


def render_intake_buttons(line_user_id: str) -> dict:
    return {
        "type": "template",
        "altText": "Report a problem",
        "template": {
            "type": "buttons",
            "title": "Report a problem",
            "text": "Fill in the repair form",
            "actions": [_action_to_flex(UriAction("Open form", intake_form_url(line_user_id)))],
        },
    }


def render_link_success(ticket_code: str) -> dict:
    return text_message(
        f"Linked! You will receive status updates for {ticket_code} here.\n"
        f"Track it any time: {track_url(ticket_code)}"
    )


def render_link_failure(reason: str) -> dict:
    return text_message(f"Could not link this ticket: {reason}")


def render_no_tickets() -> dict:
    return text_message("You have no repair requests yet.")
