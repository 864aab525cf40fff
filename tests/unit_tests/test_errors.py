import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError

from ecs_deployer.errors import (
    PermanentCloudError,
    TransientCloudError,
    classify_client_error,
    is_transient,
)


def client_error(code, status=400, operation="CreateService"):
    return ClientError(
        {"Error": {"Code": code, "Message": f"{code} happened"},
         "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


@pytest.mark.parametrize("code", ["ThrottlingException", "RequestLimitExceeded", "ServiceUnavailable",
                                  "ResourceInUse"])
def test_throttling_and_faults_are_transient(code):
    error = classify_client_error(client_error(code), "create:service")

    assert isinstance(error, TransientCloudError)
    assert error.code == code
    assert error.operation_id == "create:service"


def test_server_errors_are_transient():
    assert is_transient(client_error("SomethingOdd", status=503))


@pytest.mark.parametrize("code", ["AccessDeniedException", "InvalidParameterException", "ValidationError"])
def test_client_errors_are_permanent(code):
    error = classify_client_error(client_error(code), "create:cluster")

    assert isinstance(error, PermanentCloudError)
    assert error.code == code


def test_connection_errors_are_transient():
    error = classify_client_error(EndpointConnectionError(endpoint_url="https://ecs.us-east-1.amazonaws.com"))

    assert isinstance(error, TransientCloudError)


def test_missing_credentials_are_permanent():
    error = classify_client_error(NoCredentialsError())

    assert isinstance(error, PermanentCloudError)
    assert error.code == "NoCredentialsError"


def test_already_classified_errors_pass_through():
    original = TransientCloudError("slow down")

    error = classify_client_error(original, "update:service")

    assert error is original
    assert error.operation_id == "update:service"
