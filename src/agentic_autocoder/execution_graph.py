"""LangGraph wrapper for a request run - trace harness only.

Wraps the session's building blocks in a LangGraph StateGraph so each
phase (planning, step selection, step execution) is visible as a node in
LangGraph Studio.

NO new orchestration logic. Retries stay inside the RetryController.
Same semantics as AutocoderSession.run_request, just structured visibility.
"""

from typing import Any, Optional
from typing_extensions import TypedDict

from langgraph.graph import StateGraph, END

from agentic_autocoder.errors import AutocoderError
from agentic_autocoder.session import AutocoderSession, RunResult, new_run_id
from agentic_autocoder.task_state import TaskPlan


class TaskGraphState(TypedDict):
    """State for the task graph."""
    request: str
    task_plan: Optional[TaskPlan]
    step_index: Optional[int]
    status: str
    # Run record, session and callbacks (passed through state)
    run: Any
    session: Any
    on_progress: Any
    on_result: Any


# --- Graph Nodes ---

def node_plan(state: TaskGraphState) -> TaskGraphState:
    """Record the task plan, creating it when the run was started without one."""
    session = state["session"]
    plan = state.get("task_plan") or session.plan_request(state["request"])
    state["run"].plan = plan
    session.emit_progress(plan, state.get("on_progress"))
    return {**state, "task_plan": plan, "status": "RUNNING"}


def node_select_step(state: TaskGraphState) -> TaskGraphState:
    """Point at the step under the plan cursor, or mark the run done."""
    plan = state["task_plan"]
    if plan.is_terminal:
        return {**state, "step_index": None, "status": "SUCCESS"}
    return {**state, "step_index": plan.current_step}


def node_execute_step(state: TaskGraphState) -> TaskGraphState:
    """Run the selected step under the retry controller."""
    session = state["session"]
    entries = session.execute_step(state["task_plan"], state["step_index"], state.get("on_progress"))
    on_result = state.get("on_result")
    for entry in entries:
        state["run"].results.append(entry)
        if on_result:
            on_result(entry)
    return state


def node_advance(state: TaskGraphState) -> TaskGraphState:
    """Pause between steps."""
    session = state["session"]
    if not state["task_plan"].is_terminal and session.config.step_delay_s:
        session.sleep(session.config.step_delay_s)
    return state


# --- Conditional Edges ---

def should_execute(state: TaskGraphState) -> str:
    """Decide whether there is a step left to run."""
    if state["status"] == "SUCCESS" or state.get("step_index") is None:
        return "end"
    return "execute"


# --- Graph Builder ---

def build_task_graph() -> StateGraph:
    """
    Build the task graph.

    Flow:
        plan -> select_step -> (step left?) -> execute_step -> advance -> select_step
                            -> (done) -> end
    """
    graph = StateGraph(TaskGraphState)

    graph.add_node("plan", node_plan)
    graph.add_node("select_step", node_select_step)
    graph.add_node("execute_step", node_execute_step)
    graph.add_node("advance", node_advance)

    graph.set_entry_point("plan")

    graph.add_edge("plan", "select_step")
    graph.add_conditional_edges(
        "select_step",
        should_execute,
        {
            "end": END,
            "execute": "execute_step",
        }
    )
    graph.add_edge("execute_step", "advance")
    graph.add_edge("advance", "select_step")

    return graph


def run_task_graph(
    session: AutocoderSession,
    request: str,
    on_progress=None,
    on_result=None,
    plan: Optional[TaskPlan] = None,
    run_id: Optional[str] = None,
) -> RunResult:
    """
    Run the task graph and return the run result.

    This is the traced equivalent of AutocoderSession.run_request(). On
    failure the partial result is kept in `session.last_result` and the
    error is re-raised.
    """
    compiled = build_task_graph().compile()
    result = RunResult(run_id=run_id or new_run_id(), request=request, status="RUNNING", plan=plan)

    try:
        # The recursion limit depends on the step count, so plan before invoking
        if plan is None:
            plan = session.plan_request(request)

        initial_state: TaskGraphState = {
            "request": request,
            "task_plan": plan,
            "step_index": None,
            "status": "PENDING",
            "run": result,
            "session": session,
            "on_progress": on_progress,
            "on_result": on_result,
        }
        # plan + three nodes per step, with headroom
        config = {"recursion_limit": 3 * plan.total_steps + 10}
        compiled.invoke(initial_state, config=config)
    except (AutocoderError, ValueError, OSError) as e:
        session.finish(result, e)
        raise

    return session.finish(result)


# Pre-compiled graph for Studio discovery
task_graph = build_task_graph().compile()
