"""
Excel roster export for clinical slots.
"""

import io

import pandas as pd

ROSTER_COLUMNS = ['Student', 'Assigned By', 'Assigned At', 'Notes']
XLSX_MIMETYPE = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'


def roster_frame(assignments: list[dict]) -> pd.DataFrame:
    """Flatten slot assignment rows into the roster table."""
    rows = [
        [
            a.get('student_name'),
            a.get('assigned_by_name'),
            a.get('created_at'),
            a.get('notes') or ''
        ]
        for a in assignments
    ]
    return pd.DataFrame(rows, columns=ROSTER_COLUMNS)


def build_roster_workbook(slot: dict, assignments: list[dict]) -> bytes:
    """Render a styled single-sheet workbook for one slot's roster."""
    df = roster_frame(assignments)
    title = (
        f"{slot.get('site_name') or 'Site'} - {slot['slot_date']} "
        f"{slot['start_time']}-{slot['end_time']} "
        f"({len(assignments)}/{slot['max_students']})"
    )

    output = io.BytesIO()

    with pd.ExcelWriter(output, engine='xlsxwriter') as writer:
        df.to_excel(writer, sheet_name='Roster', index=False, startrow=2)

        workbook = writer.book
        worksheet = writer.sheets['Roster']

        title_format = workbook.add_format({'bold': True, 'font_size': 13})

        header_format = workbook.add_format({
            'bold': True,
            'text_wrap': True,
            'valign': 'top',
            'fg_color': '#8B0000',
            'font_color': '#FFFFFF',
            'border': 1
        })

        cell_format = workbook.add_format({'border': 1})

        name_format = workbook.add_format({
            'bold': True,
            'border': 1,
            'bg_color': '#F8F8F8'
        })

        worksheet.write(0, 0, title, title_format)
        if slot.get('preceptor_name'):
            worksheet.write(1, 0, f"Preceptor: {slot['preceptor_name']}")

        for col_num, value in enumerate(df.columns.values):
            worksheet.write(2, col_num, value, header_format)

        for row_num, row_data in enumerate(df.itertuples(index=False)):
            worksheet.write(row_num + 3, 0, row_data[0], name_format)
            for col_num in range(1, len(ROSTER_COLUMNS)):
                worksheet.write(row_num + 3, col_num, row_data[col_num], cell_format)

        worksheet.autofit()

    output.seek(0)
    return output.getvalue()
