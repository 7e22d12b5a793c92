import asyncio
import json

from conftest import ScriptedLLM, answer_response

from cell_orchestrator.models import ModelResponse, ToolCall

PLAN = {
    "taskTitle": "PPAP revision audit",
    "taskDescription": "Confirm every document references the same revision.",
    "useCases": [
        {
            "id": "revision-audit",
            "name": "Revision Audit",
            "columns": [
                {
                    "id": "psw-revision",
                    "name": "PSW Revision",
                    "systemPrompt": "Look up the PSW and report the revision it declares.",
                    "tools": ["get_document_details"],
                    "outputFormat": "badge",
                },
                {
                    "id": "torque",
                    "name": "Torque",
                    "systemPrompt": "Report the torque specification in Nm.",
                    "outputFormat": "number",
                },
            ],
        }
    ],
}


def test_plan_collection_run_with_tool_using_column(make_runner, settings) -> None:
    def handler(messages, config, tools):
        if config.model == settings.planner_model:
            return ModelResponse(content=json.dumps(PLAN))
        tool_results = [m for m in messages if m.role == "tool"]
        if tools and not tool_results:
            return ModelResponse(
                tool_calls=(ToolCall(name="get_document_details", args={"document_id": "doc-b"}),)
            )
        if tool_results:
            details = json.loads(tool_results[-1].content)
            return answer_response(f"Rev {details['extracted_data']['revision']}")
        if "Torque spec 12 Nm" in messages[-1].content:
            return answer_response("12 Nm")
        return answer_response("Not stated")

    llm = ScriptedLLM(handler=handler)
    runner = make_runner(llm)

    async def scenario():
        plan = await runner.submit_plan("Audit revisions across the PPAP package")
        state = runner.create_collection(plan.groups[0], title=plan.title)
        report = await runner.run_all(state.id)
        return plan, report, runner.get_state(state.id)

    plan, report, final = asyncio.run(scenario())

    assert plan.title == "PPAP revision audit"
    assert report.failed == ()
    assert len(report.completed) == 6
    for target_id in ("doc-a", "doc-b", "doc-c"):
        revision = final.cell(target_id, "psw-revision")
        assert revision.result == "Rev D"
        assert revision.value.value == "Rev D"
    assert final.cell("doc-a", "torque").value.value == 12.0
    assert final.cell("doc-b", "torque").value is None
    planner_calls = [call for call in llm.calls if call["config"].model == settings.planner_model]
    cell_calls = [call for call in llm.calls if call["config"].model != settings.planner_model]
    assert len(planner_calls) == 1
    assert len(cell_calls) == 3 * 2 + 3
