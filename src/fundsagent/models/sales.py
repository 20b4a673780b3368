"""
Sales data rows as returned by the backing store.

B2B rows hold one line per RM and partner (ARN); figures are in crore and
must be summed per RM before they are compared or ranked.
"""

from datetime import date
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, validator


class SalesPeriod(str, Enum):
    MTD = "MTD"
    YTD = "YTD"


class B2BSalesRow(BaseModel):
    """One B2B sales line for an RM and partner."""

    rm_emp_id: str = Field(..., description="W-prefixed RM employee number")
    partner_name: str = Field(default="", description="IFA / ARN partner, not the RM")
    zone: str = Field(default="")
    branch: str = Field(default="")
    mf_sif_msci: float = Field(default=0.0, description="MF + SIF + MSCI, Cr")
    cob100: float = Field(default=0.0, description="COB at 100%, Cr")
    aif_pms_las: float = Field(default=0.0, description="AIF + PMS + LAS + DYNAMO trail, Cr")
    alternate: float = Field(default=0.0, description="Alternate, Cr")
    total: float = Field(default=0.0, description="Total net sales (COB 100%), Cr")

    @validator("rm_emp_id", "partner_name", "zone", "branch", pre=True)
    def strip_text(cls, v):
        return str(v or "").strip()

    @validator("mf_sif_msci", "cob100", "aif_pms_las", "alternate", "total", pre=True)
    def parse_amount(cls, v):
        try:
            return float(v or 0)
        except (TypeError, ValueError):
            return 0.0

    @property
    def has_rm(self) -> bool:
        return bool(self.rm_emp_id) and self.rm_emp_id != "#N/A"


class B2CSalesRow(BaseModel):
    """One B2C advisor performance row."""

    advisor_email: str = Field(..., description="Advisor work email")
    team: str = Field(default="")
    net_inflow_mtd: float = Field(default=0.0, description="Net inflow MTD, Cr")
    net_inflow_ytd: float = Field(default=0.0, description="Net inflow YTD, Cr")
    current_aum: float = Field(default=0.0, description="Current AUM, Cr")
    aum_growth_pct: float = Field(default=0.0, description="AUM growth, %")
    assigned_leads: int = Field(default=0)
    new_sip_inflow_ytd: float = Field(default=0.0, description="New SIP inflow YTD, Cr")

    @validator("advisor_email", pre=True)
    def normalise_email(cls, v):
        return str(v or "").strip().lower()

    @validator("net_inflow_mtd", "net_inflow_ytd", "current_aum", "aum_growth_pct", "new_sip_inflow_ytd", pre=True)
    def parse_amount(cls, v):
        try:
            return float(v or 0)
        except (TypeError, ValueError):
            return 0.0

    @validator("assigned_leads", pre=True)
    def parse_count(cls, v):
        try:
            return int(float(v or 0))
        except (TypeError, ValueError):
            return 0


class SalesTarget(BaseModel):
    """Monthly or quarterly target for an employee."""

    employee_id: str = Field(..., description="Employee record id")
    business_unit: str
    target_type: str = Field(default="monthly")
    target_value: float = Field(..., description="Target, Cr")
    period_start: date
    period_end: Optional[date] = None
