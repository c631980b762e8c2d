import os

from aws_cdk import (
    CfnOutput,
    Duration,
    RemovalPolicy,
    Stack,
    aws_apigateway as apigw,
    aws_cloudwatch as cloudwatch,
    aws_cognito as cognito,
    aws_dynamodb as ddb,
    aws_lambda as _lambda,
    aws_logs as logs,
)
from constructs import Construct

OWNER_INDEX_NAME = "OwnerIdIndex"
ADMIN_GROUP_NAME = "admins"


class TasksServiceStack(Stack):
    def __init__(self, scope: Construct, construct_id: str, **kwargs) -> None:
        super().__init__(scope, construct_id, **kwargs)

        # Used for API stage name and to help avoid naming collisions within an account+region.
        stage_name = os.getenv("STAGE", "prod")
        data_retention_mode = os.getenv("DATA_RETENTION_MODE", "destroy").strip().lower()
        if data_retention_mode not in {"destroy", "retain"}:
            raise ValueError(
                "DATA_RETENTION_MODE must be 'destroy' or 'retain' (case-insensitive)"
            )
        # Dev-first default: delete the table on teardown. Set DATA_RETENTION_MODE=retain for production.
        stateful_removal_policy = (
            RemovalPolicy.DESTROY
            if data_retention_mode == "destroy"
            else RemovalPolicy.RETAIN
        )
        use_owner_index = (os.getenv("TASKS_USE_OWNER_INDEX") or "true").strip().lower() in {
            "1",
            "true",
            "yes",
        }
        schema_version = "2026-10-01"
        name_prefix = f"{construct_id}-{stage_name}"

        tasks_table = ddb.Table(
            self,
            "Tasks",
            partition_key=ddb.Attribute(name="id", type=ddb.AttributeType.STRING),
            billing_mode=ddb.BillingMode.PAY_PER_REQUEST,
            point_in_time_recovery=True,
            removal_policy=stateful_removal_policy,
        )
        if use_owner_index:
            tasks_table.add_global_secondary_index(
                index_name=OWNER_INDEX_NAME,
                partition_key=ddb.Attribute(name="ownerId", type=ddb.AttributeType.STRING),
                projection_type=ddb.ProjectionType.ALL,
            )

        user_pool = cognito.UserPool(
            self,
            "TasksUserPool",
            user_pool_name=f"{name_prefix}-users",
            self_sign_up_enabled=False,
            sign_in_aliases=cognito.SignInAliases(username=True, email=True),
            password_policy=cognito.PasswordPolicy(
                min_length=12,
                require_digits=True,
                require_lowercase=True,
                require_uppercase=True,
                require_symbols=True,
            ),
            removal_policy=stateful_removal_policy,
        )
        user_pool_client = user_pool.add_client(
            "TasksUserPoolClient",
            auth_flows=cognito.AuthFlow(user_password=True),
            generate_secret=False,
        )
        cognito.CfnUserPoolGroup(
            self,
            "TasksAdminsGroup",
            user_pool_id=user_pool.user_pool_id,
            group_name=ADMIN_GROUP_NAME,
            description="Members may read and write every task.",
        )

        tasks_fn = _lambda.Function(
            self,
            "TasksHandler",
            runtime=_lambda.Runtime.PYTHON_3_12,
            handler="tasks_handler.handler",
            code=_lambda.Code.from_asset("lambda"),
            timeout=Duration.seconds(20),
            environment={
                "TASKS_TABLE": tasks_table.table_name,
                "TASKS_OWNER_INDEX": OWNER_INDEX_NAME,
                "USE_OWNER_INDEX": "true" if use_owner_index else "false",
                "TASKS_ADMIN_GROUP": ADMIN_GROUP_NAME,
                "TASKS_SCHEMA_VERSION": schema_version,
                "TASKS_STORE_MAX_ATTEMPTS": "3",
                "TASKS_STORE_TIMEOUT_SECONDS": "5",
            },
        )
        tasks_table.grant_read_write_data(tasks_fn)

        # Create the Lambda log group explicitly so the metric filter can be created during stack deploy.
        log_group = logs.LogGroup(
            self,
            "TasksLogGroup",
            log_group_name=f"/aws/lambda/{tasks_fn.function_name}",
            retention=logs.RetentionDays.ONE_WEEK,
            removal_policy=stateful_removal_policy,
        )
        access_log_group = logs.LogGroup(
            self,
            "ApiAccessLogGroup",
            retention=logs.RetentionDays.ONE_WEEK,
            removal_policy=stateful_removal_policy,
        )

        rest_api = apigw.RestApi(
            self,
            "TasksApi",
            rest_api_name=f"{name_prefix}-api",
            deploy_options=apigw.StageOptions(
                stage_name=stage_name,
                access_log_destination=apigw.LogGroupLogDestination(access_log_group),
                # Standard fields only; do not log headers (e.g., Authorization).
                access_log_format=apigw.AccessLogFormat.json_with_standard_fields(
                    caller=True,
                    http_method=True,
                    ip=True,
                    protocol=True,
                    request_time=True,
                    resource_path=True,
                    response_length=True,
                    status=True,
                    user=True,
                ),
            ),
            # Needed for API Gateway to push logs to CloudWatch Logs.
            cloud_watch_role=True,
        )

        v1 = rest_api.root.add_resource("v1")
        tasks = v1.add_resource("tasks")
        task = tasks.add_resource("{id}")

        tasks_authorizer = apigw.CognitoUserPoolsAuthorizer(
            self,
            "TasksCognitoAuthorizer",
            cognito_user_pools=[user_pool],
        )
        tasks_integration = apigw.LambdaIntegration(tasks_fn)

        for resource, methods in ((tasks, ["GET", "POST"]), (task, ["GET", "PUT", "PATCH", "DELETE"])):
            for method in methods:
                resource.add_method(
                    method,
                    tasks_integration,
                    authorization_type=apigw.AuthorizationType.COGNITO,
                    authorizer=tasks_authorizer,
                )
            # Browsers send preflight without credentials; the handler answers it.
            resource.add_method(
                "OPTIONS",
                tasks_integration,
                authorization_type=apigw.AuthorizationType.NONE,
            )

        logs.MetricFilter(
            self,
            "TasksErrorMetricFilter",
            log_group=log_group,
            metric_namespace="TasksService",
            metric_name="Errors",
            filter_pattern=logs.FilterPattern.string_value("$.outcome", "=", "error"),
            metric_value="1",
        )
        cloudwatch.Alarm(
            self,
            "TasksErrorsAlarm",
            metric=cloudwatch.Metric(
                namespace="TasksService",
                metric_name="Errors",
                statistic="Sum",
                period=Duration.minutes(5),
            ),
            threshold=1,
            evaluation_periods=1,
            datapoints_to_alarm=1,
        )

        CfnOutput(
            self,
            "TasksInvokeUrl",
            value=f"{rest_api.url}v1/tasks",
            description="Invoke URL base for task endpoints.",
        )
        CfnOutput(
            self,
            "TasksTableName",
            value=tasks_table.table_name,
        )
        CfnOutput(
            self,
            "UserPoolId",
            value=user_pool.user_pool_id,
        )
        CfnOutput(
            self,
            "UserPoolClientId",
            value=user_pool_client.user_pool_client_id,
        )
