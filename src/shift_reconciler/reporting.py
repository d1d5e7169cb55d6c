"""
Reporting and Export Module for the Shift Reconciliation System

Read-only consumer of the change log. Produces CSV, Excel and PDF audit
reports of proposals, decisions and the shifts they produced.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from .change_log import ChangeLog, ChangeLogRetentionPolicy
from .models import ChangeLogEntry, Decision, Shift

logger = logging.getLogger(__name__)

COLUMNS = [
    'Sequence', 'Timestamp', 'Proposal', 'Kind', 'Origin', 'Requested_By', 'Decision',
    'Verdict', 'Reasons', 'Shifts', 'Result', 'References'
]


def _describe_shift(shift: Shift) -> str:
    if shift.is_all_day:
        hours = "all day"
    else:
        hours = (f"{shift.start_time.isoformat(timespec='minutes')}-"
                 f"{shift.end_time.isoformat(timespec='minutes')}")
    return f"{shift.owner_id} {shift.date.isoformat()} {hours} v{shift.version}"


class ChangeLogReportGenerator:
    """Builds audit reports from change log entries"""

    def __init__(self, change_log: ChangeLog):
        self.change_log = change_log
        self.styles = getSampleStyleSheet()
        self._setup_custom_styles()

    def _setup_custom_styles(self):
        """Setup custom report styles"""
        self.styles.add(ParagraphStyle(
            name='CustomTitle',
            parent=self.styles['Heading1'],
            fontSize=18,
            spaceAfter=20,
            alignment=1  # Center alignment
        ))
        self.styles.add(ParagraphStyle(
            name='CellText',
            parent=self.styles['Normal'],
            fontSize=7,
            leading=9
        ))

    def collect_entries(self, retention_policy: ChangeLogRetentionPolicy = ChangeLogRetentionPolicy.FOREVER,
                        now: Optional[datetime] = None) -> List[ChangeLogEntry]:
        """Entries inside the retention window, oldest first"""
        return self.change_log.entries_since(retention_policy.cutoff_date(now))

    def _entry_row(self, entry: ChangeLogEntry) -> Dict[str, Any]:
        proposal = entry.proposal
        reasons = [code.value for code in entry.verdict.reason_codes]
        if entry.reason is not None:
            reasons.append(entry.reason.value)
        if entry.decision is Decision.COMMITTED:
            results = [_describe_shift(shift) for shift in entry.resulting_shifts]
            results.extend(f"{shift_id} removed" for shift_id in entry.removed_shift_ids)
            result = "; ".join(results)
        else:
            result = ""
        return {
            'Sequence': entry.sequence_number,
            'Timestamp': entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            'Proposal': entry.proposal_id,
            'Kind': proposal.kind.value,
            'Origin': proposal.origin.value,
            'Requested_By': proposal.requested_by or '',
            'Decision': entry.decision.value,
            'Verdict': entry.verdict.status.value,
            'Reasons': ", ".join(reasons),
            'Shifts': ", ".join(sid for sid in proposal.shift_ids if sid),
            'Result': result,
            'References': entry.references_sequence or ''
        }

    def create_entries_dataframe(self, entries: List[ChangeLogEntry]) -> pd.DataFrame:
        """Create change log DataFrame for export"""
        return pd.DataFrame([self._entry_row(entry) for entry in entries], columns=COLUMNS)

    def create_summary(self, entries: List[ChangeLogEntry]) -> Dict[str, Any]:
        """Counts by decision and verdict for the report header"""
        df = self.create_entries_dataframe(entries)
        summary = {
            'total_entries': len(df),
            'committed': int((df['Decision'] == Decision.COMMITTED.value).sum()),
            'rejected': int((df['Decision'] == Decision.REJECTED.value).sum()),
            'pending_approval': int((df['Decision'] == Decision.PENDING_APPROVAL.value).sum()),
            'by_verdict': df['Verdict'].value_counts().to_dict(),
            'by_origin': df['Origin'].value_counts().to_dict(),
        }
        if len(df):
            summary['first_entry'] = df['Timestamp'].iloc[0]
            summary['last_entry'] = df['Timestamp'].iloc[-1]
        return summary

    def export_csv(self, output_path: str, entries: List[ChangeLogEntry]) -> bool:
        """Export change log to CSV format"""
        try:
            self.create_entries_dataframe(entries).to_csv(output_path, index=False)
            return True
        except Exception as e:
            logger.error(f"Error exporting change log to CSV: {e}", exc_info=True)
            return False

    def export_excel(self, output_path: str, entries: List[ChangeLogEntry]) -> bool:
        """Export change log to Excel with a summary sheet"""
        try:
            entries_df = self.create_entries_dataframe(entries)
            summary = self.create_summary(entries)
            summary_df = pd.DataFrame([
                {'Metric': 'Total Entries', 'Value': summary['total_entries']},
                {'Metric': 'Committed', 'Value': summary['committed']},
                {'Metric': 'Rejected', 'Value': summary['rejected']},
                {'Metric': 'Pending Approval', 'Value': summary['pending_approval']},
            ])

            with pd.ExcelWriter(output_path, engine='openpyxl') as writer:
                entries_df.to_excel(writer, sheet_name='Change Log', index=False)
                summary_df.to_excel(writer, sheet_name='Summary', index=False)
                self._format_excel_worksheet(writer.sheets['Change Log'])

            return True

        except Exception as e:
            logger.error(f"Error exporting change log to Excel: {e}", exc_info=True)
            return False

    def _format_excel_worksheet(self, worksheet):
        """Header colours and column widths"""
        from openpyxl.styles import Font, PatternFill

        header_fill = PatternFill(start_color="366092", end_color="366092", fill_type="solid")
        header_font = Font(color="FFFFFF", bold=True)
        for cell in worksheet[1]:
            cell.fill = header_fill
            cell.font = header_font

        for column in worksheet.columns:
            max_length = max((len(str(cell.value)) for cell in column if cell.value is not None),
                             default=0)
            worksheet.column_dimensions[column[0].column_letter].width = min(max_length + 2, 50)

    def export_pdf(self, output_path: str, entries: List[ChangeLogEntry],
                   title: str = "Shift Change Log") -> bool:
        """Export change log to PDF with summary and entry table"""
        try:
            doc = SimpleDocTemplate(
                output_path,
                pagesize=landscape(A4),
                rightMargin=0.4*inch,
                leftMargin=0.4*inch,
                topMargin=0.5*inch,
                bottomMargin=0.5*inch
            )

            story = [Paragraph(title, self.styles['CustomTitle'])]
            story.append(self._create_summary_table(entries))
            story.append(Spacer(1, 20))

            if entries:
                story.append(self._create_entries_table(entries))
            else:
                story.append(Paragraph("No change log entries in this period.",
                                       self.styles['Normal']))

            doc.build(story)
            return True

        except Exception as e:
            logger.error(f"Error creating change log PDF: {e}", exc_info=True)
            return False

    def _create_summary_table(self, entries: List[ChangeLogEntry]) -> Table:
        summary = self.create_summary(entries)
        data = [
            ['Entries', 'Committed', 'Rejected', 'Pending Approval'],
            [summary['total_entries'], summary['committed'], summary['rejected'],
             summary['pending_approval']],
        ]
        table = Table(data, colWidths=[1.6*inch]*4)
        table.setStyle(TableStyle([
            ('BACKGROUND', (0, 0), (-1, 0), colors.grey),
            ('TEXTCOLOR', (0, 0), (-1, 0), colors.whitesmoke),
            ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
            ('ALIGN', (0, 0), (-1, -1), 'CENTER'),
            ('GRID', (0, 0), (-1, -1), 0.5, colors.black),
        ]))
        return table

    def _create_entries_table(self, entries: List[ChangeLogEntry]) -> Table:
        columns = ['Sequence', 'Timestamp', 'Kind', 'Origin', 'Decision', 'Verdict',
                   'Reasons', 'Result']
        df = self.create_entries_dataframe(entries)[columns]
        cell_style = self.styles['CellText']
        data = [columns]
        for row in df.itertuples(index=False):
            data.append([Paragraph(str(value), cell_style) for value in row])

        table = Table(
            data,
            colWidths=[0.6*inch, 1.3*inch, 0.7*inch, 0.9*inch, 1.1*inch, 1.0*inch,
                       1.9*inch, 3.2*inch],
            repeatRows=1
        )
        style = [
            ('BACKGROUND', (0, 0), (-1, 0), colors.grey),
            ('TEXTCOLOR', (0, 0), (-1, 0), colors.whitesmoke),
            ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
            ('FONTSIZE', (0, 0), (-1, 0), 8),
            ('VALIGN', (0, 0), (-1, -1), 'TOP'),
            ('GRID', (0, 0), (-1, -1), 0.5, colors.black),
        ]
        for row_index, entry in enumerate(entries, start=1):
            if entry.decision is Decision.REJECTED:
                style.append(('BACKGROUND', (0, row_index), (-1, row_index), colors.mistyrose))
            elif entry.decision is Decision.PENDING_APPROVAL:
                style.append(('BACKGROUND', (0, row_index), (-1, row_index), colors.lightyellow))
        table.setStyle(TableStyle(style))
        return table


class ExportManager:
    """Manager class for handling all change log export operations"""

    FORMATS = {'csv': 'csv', 'excel': 'xlsx', 'pdf': 'pdf'}

    def __init__(self, change_log: ChangeLog):
        self.change_log = change_log
        self.report_generator = ChangeLogReportGenerator(change_log)

    def export_change_log(self, format_type: str, output_path: str,
                          retention_policy: ChangeLogRetentionPolicy = ChangeLogRetentionPolicy.FOREVER) -> bool:
        """Export change log entries inside the retention window in the given format"""
        entries = self.report_generator.collect_entries(retention_policy)
        fmt = format_type.lower()
        if fmt == 'csv':
            return self.report_generator.export_csv(output_path, entries)
        elif fmt == 'excel':
            return self.report_generator.export_excel(output_path, entries)
        elif fmt == 'pdf':
            return self.report_generator.export_pdf(
                output_path, entries,
                title=f"Shift Change Log ({retention_policy.display_name})"
            )
        else:
            raise ValueError(f"Unsupported format: {format_type}")

    def get_default_filename(self, format_type: str) -> str:
        """Generate default filename for export"""
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return f"shift_change_log_{timestamp}.{self.FORMATS[format_type.lower()]}"

    def batch_export(self, output_dir: str, formats: Optional[List[str]] = None,
                     retention_policy: ChangeLogRetentionPolicy = ChangeLogRetentionPolicy.FOREVER) -> Dict[str, bool]:
        """Export change log in multiple formats"""
        if formats is None:
            formats = ['pdf', 'excel', 'csv']

        results = {}
        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)

        for format_type in formats:
            file_path = output_path / self.get_default_filename(format_type)
            try:
                results[format_type] = self.export_change_log(
                    format_type, str(file_path), retention_policy
                )
            except ValueError as e:
                logger.error(f"Error exporting {format_type}: {e}", exc_info=True)
                results[format_type] = False

        return results
