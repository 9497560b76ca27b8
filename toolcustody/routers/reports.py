from datetime import datetime, timezone
import io
from fastapi import APIRouter, Depends
from fastapi.responses import Response
from openpyxl import Workbook
from openpyxl.styles import Font, Alignment, PatternFill
from openpyxl.worksheet.table import Table, TableStyleInfo
from toolcustody.deps import get_workspace, require_permission
from toolcustody.schemas import BookingItem, ToolStatus, User
from toolcustody.workspace import Workspace

router = APIRouter(prefix="/reports", tags=["reports"])

HEADER = ["ID", "Name", "Category", "Serial", "Items", "Status", "Holder", "Site", "Booked at", "Last action"]
COL_WIDTHS = {"A": 10, "B": 26, "C": 16, "D": 14, "E": 8, "F": 14, "G": 20, "H": 24, "I": 20, "J": 20}


def _naive(dt: datetime | None) -> datetime | None:
    # Excel 不认时区
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).replace(tzinfo=None) if dt.tzinfo else dt


@router.get("/bookings", response_model=list[BookingItem])
def current_bookings(
    ws: Workspace = Depends(get_workspace),
    _user: User = Depends(require_permission("view_all_bookings")),
):
    booked = [t for t in ws.tools.values() if t.status == ToolStatus.BOOKED_OUT]
    booked.sort(key=lambda t: t.booked_at or datetime.min.replace(tzinfo=timezone.utc))
    return [
        BookingItem(
            tool_id=t.id,
            tool_name=t.name,
            holder_id=t.current_holder_id,
            holder_name=t.current_holder_name,
            site=t.current_site,
            booked_at=t.booked_at,
        )
        for t in booked
    ]


@router.get("/tools.xlsx")
def export_tools_xlsx(
    ws: Workspace = Depends(get_workspace),
    _user: User = Depends(require_permission("view_reports")),
):
    tools = sorted(ws.tools.values(), key=lambda t: t.id)

    wb = Workbook()
    sheet = wb.active
    sheet.title = "Inventory"

    sheet.append(HEADER)
    sheet.row_dimensions[1].height = 26
    header_font = Font(bold=True)
    header_fill = PatternFill("solid", fgColor="DDDDDD")
    header_align = Alignment(horizontal="center", vertical="center")
    for col in range(1, len(HEADER) + 1):
        cell = sheet.cell(row=1, column=col)
        cell.font = header_font
        cell.fill = header_fill
        cell.alignment = header_align

    for t in tools:
        sheet.append([
            t.id,
            t.name,
            t.category or "",
            t.serial_number or "",
            t.item_count,
            t.status.value,
            t.current_holder_name or "",
            t.current_site or "",
            _naive(t.booked_at),
            _naive(t.logs[-1].timestamp) if t.logs else None,
        ])

    data_end_row = 1 + len(tools)
    sheet.freeze_panes = "A2"
    for r in range(2, data_end_row + 1):
        sheet.cell(row=r, column=5).number_format = "0"
        sheet.cell(row=r, column=9).number_format = "yyyy-mm-dd hh:mm"
        sheet.cell(row=r, column=10).number_format = "yyyy-mm-dd hh:mm"
    for k, w in COL_WIDTHS.items():
        sheet.column_dimensions[k].width = w

    # 没有数据时也至少覆盖表头，避免范围非法
    table = Table(displayName="Inventory", ref=f"A1:J{max(2, data_end_row)}")
    table.tableStyleInfo = TableStyleInfo(
        name="TableStyleMedium9",
        showFirstColumn=False,
        showLastColumn=False,
        showRowStripes=True,
        showColumnStripes=False,
    )
    sheet.add_table(table)

    sheet.append([])
    sheet.append(["Exported at", datetime.now().strftime("%Y-%m-%d %H:%M:%S")])

    buf = io.BytesIO()
    wb.save(buf)

    return Response(
        content=buf.getvalue(),
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": 'attachment; filename="inventory.xlsx"'},
    )
