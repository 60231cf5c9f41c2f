"""
Todo application stack.

A static frontend bucket, a DynamoDB table, two Lambda functions sharing a
code layer, a REST API in front of them, and a post-create action that writes
the API URL into the frontend's config.js once both exist.

The module can be run directly:

    python examples/todo_app.py

or driven by the CLI, which picks up ``stack``, ``providers`` and
``pipeline`` from this module:

    moraine plan examples/todo_app.py
    moraine apply examples/todo_app.py
    moraine pipeline examples/todo_app.py --resume
"""

import json

from moraine import Executor, FileStateStore, Format, MoraineSettings, PlanEngine, Stack
from moraine.log import configure_logging
from moraine.pipeline import CommandAction, DeployAction, Pipeline, Stage
from moraine.providers import ActionProvider, LocalProvider, ProviderRegistry

settings = MoraineSettings()

# ============================================================================
# Resources
# ============================================================================
stack = Stack(name="todo-app")

frontend = stack.resource(
    "frontend",
    "s3:Bucket",
    public_read_access=True,
    auto_delete_objects=True,
)

frontend_files = stack.resource(
    "frontend_files",
    "s3:BucketDeployment",
    source="application/my-app/build/",
    destination_bucket=frontend.output("id"),
)

items = stack.resource(
    "todo_items",
    "dynamodb:Table",
    partition_key={"name": "lecture", "type": "STRING"},
    sort_key={"name": "lectureDate", "type": "STRING"},
)

shared_code = stack.resource(
    "shared_code",
    "lambda:LayerVersion",
    code="application/functions/shared-code",
    compatible_runtimes=["nodejs14.x"],
)


def todo_function(id: str, code: str):
    return stack.resource(
        id,
        "lambda:Function",
        runtime="nodejs14.x",
        handler="index.handler",
        code=code,
        environment={
            "TODO_ITEMS_TABLE_NAME": items.output("id"),
            "ALLOWED_ORIGINS": "*",
        },
        layers=[shared_code.output("arn")],
    )


add_item = todo_function("add_item", "application/functions/add-item")
get_items = todo_function("get_items", "application/functions/get-item")

stack.resource("add_item_access", "iam:Grant", table=items.output("arn"),
               grantee=add_item.output("arn"), access="read-write")
stack.resource("get_items_access", "iam:Grant", table=items.output("arn"),
               grantee=get_items.output("arn"), access="read")

api = stack.resource("api", "apigateway:RestApi", rest_api_name="TodoApplicationApi")

item_route = stack.resource(
    "item_route",
    "apigateway:Resource",
    rest_api=api.output("id"),
    path="item",
    cors={"allow_origins": ["*"], "allow_methods": ["GET", "PUT"]},
)

for method, function in (("PUT", add_item), ("GET", get_items)):
    stack.resource(
        f"item_{method.lower()}",
        "apigateway:Method",
        resource=item_route.output("id"),
        http_method=method,
        integration=function.output("arn"),
    )

stack.resource(
    "frontend_config",
    "action:PutObject",
    bucket=frontend.output("id"),
    key="config.js",
    body=Format(
        "window.AWSConfig = {{\n    \"itemsApi\": \"{url}\"\n}};",
        url=Format("https://{api_id}.execute-api.{region}.amazonaws.com/prod/",
                   api_id=api.output("id"), region=api.output("region")),
    ),
    depends_on=[frontend_files, api],
)

# ============================================================================
# Providers
# ============================================================================
actions = ActionProvider()
written_objects: dict[str, str] = {}


@actions.action("action:PutObject")
def put_object(inputs):
    """Stand-in for s3.put_object; records the object that would be written."""
    written_objects[f"{inputs['bucket']}/{inputs['key']}"] = inputs["body"]
    return {"key": inputs["key"], "bucket": inputs["bucket"]}


providers = ProviderRegistry({"action": actions}, default=LocalProvider(region="us-east-1"))

# ============================================================================
# Pipeline: source -> build -> deploy
# ============================================================================
store = FileStateStore(settings.state_dir)

pipeline = Pipeline(
    "todo-app-release",
    stages=[
        Stage("source", CommandAction(["git", "pull", "--ff-only"])),
        Stage("build", CommandAction("npm run build", cwd="application/my-app")),
        Stage("deploy", DeployAction(stack, providers, store, settings)),
    ],
    resume_from_failure=settings.resume_from_failure,
)


if __name__ == "__main__":
    configure_logging(settings.log_level, settings.log_format)

    print("Todo application")
    print("=" * 60)

    graph = stack.graph()
    print(f"✓ {len(graph)} resources in {len(graph.levels())} parallel levels")
    for i, level in enumerate(graph.levels()):
        print(f"  {i}: {', '.join(level)}")

    plan = PlanEngine().plan(stack.nodes, store.load())
    print(f"\n✓ Plan: {plan.summary()}")

    result = Executor(providers, store, concurrency=settings.concurrency).execute(plan)
    print(f"✓ Applied {len(result.changed)} resources")

    for path, body in written_objects.items():
        print(f"\n{path}:\n{body}")

    print(json.dumps(store.load().outputs("api"), indent=2))
