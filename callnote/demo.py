"""Demo recordings and the canned transcript/analysis used as fallbacks."""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, List, Optional

from .models import NOT_MENTIONED, Analysis, AnalysisSource, Recording, Transcription, TranscriptSource

DEMO_RECORDINGS: List[Dict[str, Any]] = [
    {
        "id": "demo_1",
        "title": "张总面访记录",
        "durationMs": 920000,
        "createdAt": "2024-01-15T10:30:00+00:00",
        "status": "completed",
        "transcription": {
            "text": (
                "今天我拜访了张总，他是一家制造业公司的老板，45岁左右，已婚，有两个孩子在上中学。"
                "张总对我们的产品很感兴趣，特别是我提到的风险保障功能，他说最近行业竞争激烈，"
                "确实需要为家庭和企业做一些保障规划。不过他提出了保费预算的问题，希望能有更灵活的缴费方式。"
                "我建议他可以考虑分期缴费，并且承诺下周给他准备一个详细的方案。整体来说这次面访效果不错，客户意向度比较高。"
            ),
            "confidence": 0.95,
            "provenance": "demo",
        },
        "analysis": {
            "businessType": "面访跟踪",
            "customerInfo": {"name": "张总", "customerId": NOT_MENTIONED},
            "customerProfile": ["中年", "已婚", "企业主", "孩子中学", "制造业"],
            "followUpPlan": "下周准备详细保障方案，重点突出分期缴费的灵活性，针对制造业风险特点定制产品组合",
            "optionalFields": {
                "demandStimulation": "通过行业竞争激烈的现状，激发客户对风险保障的需求",
                "objectionHandling": "针对保费预算问题，提供分期缴费解决方案",
                "customerTouchPoint": "风险保障功能引起客户强烈兴趣，是主要打动点",
                "extendedThinking": "可以考虑针对制造业客户群体开发专门的产品包，突出行业特色",
            },
            "provenance": "demo",
        },
    },
    {
        "id": "demo_2",
        "title": "李女士客户盘点",
        "durationMs": 680000,
        "createdAt": "2024-01-14T14:15:00+00:00",
        "status": "completed",
        "transcription": {
            "text": (
                "李女士是我们的老客户，今年38岁，单身，在一家外企做财务总监。她之前购买了我们的重疾险，"
                "现在想了解一下养老规划的产品。李女士比较理性，对产品的收益率和风险都很关注，她希望能有一个长期稳定的投资计划。"
                "我向她介绍了我们的年金险产品，她表示需要回去仔细考虑一下，特别是想了解一下税收优惠政策。"
                "我答应她会整理相关的税收政策资料，下周再联系她。"
            ),
            "confidence": 0.92,
            "provenance": "demo",
        },
        "analysis": {
            "businessType": "盘户计划",
            "customerInfo": {"name": "李女士", "customerId": NOT_MENTIONED},
            "customerProfile": ["中年", "单身", "财务总监", "外企", "理性"],
            "followUpPlan": "整理税收优惠政策资料，下周联系客户，重点介绍年金险的税收优势",
            "optionalFields": {
                "demandStimulation": "通过养老规划需求，引导客户关注长期投资",
                "objectionHandling": "针对收益率和风险关注，提供详细的产品说明",
                "customerTouchPoint": "税收优惠政策是客户关注的重点",
                "extendedThinking": "可以针对外企高管群体推广税收优惠型产品",
            },
            "provenance": "demo",
        },
    },
    {
        "id": "demo_3",
        "title": "王先生失败复盘",
        "durationMs": 450000,
        "createdAt": "2024-01-13T16:45:00+00:00",
        "status": "completed",
        "transcription": {
            "text": (
                "今天和王先生的面谈没有达到预期效果。王先生是一个比较谨慎的人，对保险产品有一些偏见，认为保险就是骗人的。"
                "我在介绍产品时可能过于急躁，没有充分了解他的真实需求就开始推销产品。他明确表示暂时不考虑购买任何保险产品。"
                "我觉得这次失败的主要原因是我没有建立足够的信任关系，而且对他的需求分析不够深入。"
                "下次应该先从了解客户开始，建立信任关系，再逐步介绍产品。"
            ),
            "confidence": 0.88,
            "provenance": "demo",
        },
        "analysis": {
            "businessType": "失败复盘",
            "customerInfo": {"name": "王先生", "customerId": NOT_MENTIONED},
            "customerProfile": ["谨慎", "对保险有偏见"],
            "followUpPlan": "暂不跟进，需要重新制定接触策略，先建立信任关系",
            "optionalFields": {
                "failureReview": "过于急躁推销，未充分了解客户需求，信任关系建立不足",
                "extendedThinking": "对于有保险偏见的客户，应该先从教育和信任建立开始，不要急于推销产品",
            },
            "provenance": "demo",
        },
    },
]


class DemoProvider:
    """Serve the bundled demo recordings and the canned fallback results."""

    def recordings(self) -> List[Recording]:
        return [Recording.from_dict(item) for item in DEMO_RECORDINGS]

    def transcription(self) -> Transcription:
        """The canned transcript used when ASR is unavailable."""

        return Transcription.from_dict(DEMO_RECORDINGS[0]["transcription"])

    def analysis(self, provenance: AnalysisSource = AnalysisSource.DEMO) -> Analysis:
        """The canned analysis, tagged with why it is being used."""

        return replace(Analysis.from_dict(DEMO_RECORDINGS[0]["analysis"]), provenance=provenance)


def is_demo_transcript(transcription: Optional[Transcription]) -> bool:
    return transcription is not None and transcription.provenance is TranscriptSource.DEMO
