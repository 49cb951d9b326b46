"""Built-in case workflow presets that tenants can import."""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .contracts import CaseWorkflowTemplate, Stage
from .errors import NotFoundError


class CasePreset(BaseModel):
    id: str
    name: str
    name_ar: str
    case_category: str
    stages: List[Stage] = Field(default_factory=list)


def _stages(*rows: tuple) -> List[Stage]:
    stages = []
    for order, (stage_id, name, name_ar, color) in enumerate(rows):
        stages.append(
            Stage(
                id=stage_id,
                name=name,
                name_ar=name_ar,
                color=color,
                order=order,
                is_initial=order == 0,
                is_final=order == len(rows) - 1,
            )
        )
    return stages


PRESETS: Dict[str, CasePreset] = {
    "labor-case": CasePreset(
        id="labor-case",
        name="Labor Case Workflow",
        name_ar="سير عمل القضايا العمالية",
        case_category="labor",
        stages=_stages(
            ("case-filed", "Case Filed", "تقديم الدعوى", "#3B82F6"),
            ("document-review", "Document Review", "مراجعة المستندات", "#10B981"),
            ("initial-hearing", "Initial Hearing", "الجلسة الأولى", "#F59E0B"),
            ("evidence-phase", "Evidence Phase", "مرحلة الإثبات", "#8B5CF6"),
            ("closing-arguments", "Closing Arguments", "المرافعات الختامية", "#EC4899"),
            ("judgment", "Judgment", "الحكم", "#14B8A6"),
        ),
    ),
    "commercial-case": CasePreset(
        id="commercial-case",
        name="Commercial Case Workflow",
        name_ar="سير عمل القضايا التجارية",
        case_category="commercial",
        stages=_stages(
            ("case-registration", "Case Registration", "تسجيل الدعوى", "#3B82F6"),
            ("defendant-response", "Defendant Response", "رد المدعى عليه", "#10B981"),
            ("discovery", "Discovery", "تبادل المستندات", "#F59E0B"),
            ("settlement-attempt", "Settlement Attempt", "محاولة التسوية", "#8B5CF6"),
            ("trial", "Trial", "المحاكمة", "#EC4899"),
            ("verdict", "Verdict", "الحكم", "#14B8A6"),
        ),
    ),
}


def list_presets() -> List[CasePreset]:
    return [preset.model_copy(deep=True) for preset in PRESETS.values()]


def build_preset(
    preset_id: str, tenant_id: str, actor: Optional[str] = None
) -> CaseWorkflowTemplate:
    """Materialise a preset as an unsaved case workflow template."""
    preset = PRESETS.get(preset_id)
    if preset is None:
        raise NotFoundError(f"Preset '{preset_id}' not found")
    return CaseWorkflowTemplate(
        tenant_id=tenant_id,
        name=preset.name,
        name_ar=preset.name_ar,
        case_category=preset.case_category,
        stages=[stage.model_copy(deep=True) for stage in preset.stages],
        created_by=actor,
        updated_by=actor,
    )
