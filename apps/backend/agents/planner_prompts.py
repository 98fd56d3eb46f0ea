"""
Planner prompt templates.
"""

PLANNER_SYSTEM_PROMPT_EN = """You are a phone automation planning and supervision assistant.
You break user requests into sub-tasks, supervise a separate executor agent that
operates the phone, and step in with short corrective instructions when it gets stuck.
You never operate the phone yourself."""

PLANNER_SYSTEM_PROMPT_CN = """你是一个手机自动化任务规划和监督助手。你的职责是将用户需求拆分成子任务，
监督负责操作手机的执行器，并在执行器卡住时给出简短的纠偏指令。你自己不直接操作手机。"""

DECOMPOSE_INSTRUCTIONS = """Split the user request below into ordered sub-tasks for the executor.
Known task types:
{task_types}

Return JSON only, in this shape:
{{"kind": "tasks", "tasks": [{{"description": "...", "task_type": "..."}}]}}

If the request is a correction for the task currently being executed
({current_task}), return instead:
{{"kind": "correction", "content": "instruction for the executor"}}

USER REQUEST:
{request}"""

CORRECTION_INSTRUCTIONS = """The executor seems stuck on task {task_id}: {description}
Recent executor feedback (oldest first):
{feedback}

Write one short instruction that tells the executor to try a different approach.
Output the instruction only."""

OPTIMIZE_INSTRUCTIONS = """Task type: {task_type}
Current system prompt:
{current_prompt}

User corrections:
{corrections}

Execution log:
{log}

Based on the issues encountered, write an improved system prompt that helps
future executions of this task type avoid these problems.
Only output the prompt content, no explanations."""

OPTIMIZER_SYSTEM_PROMPT = "You are a prompt optimization assistant."

FALLBACK_CORRECTION_EN = """Execution seems stuck. Recent status:
{feedback}

Please try a different approach:
1. If a button does not respond, try scrolling the screen
2. If the page is not responding, go back one level
3. If the tap position is wrong, look carefully at the element positions
Please continue the task."""

FALLBACK_CORRECTION_CN = """执行似乎卡住了。最近状态：
{feedback}

请尝试不同的方法：
1. 如果按钮无法点击，尝试滑动屏幕
2. 如果页面没有响应，尝试返回上一级
3. 如果操作位置不正确，仔细观察界面元素位置
请继续执行任务。"""


def planner_system_prompt(lang: str) -> str:
    return PLANNER_SYSTEM_PROMPT_CN if lang == "cn" else PLANNER_SYSTEM_PROMPT_EN


def fallback_correction(lang: str, feedback: str) -> str:
    template = FALLBACK_CORRECTION_CN if lang == "cn" else FALLBACK_CORRECTION_EN
    return template.format(feedback=feedback)
