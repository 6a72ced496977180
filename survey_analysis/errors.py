class AppError(Exception):
    # Base class for analysis pipeline failures.
    pass


class InvalidRequest(AppError):
    # Raised when surveyIds is missing, empty or not a string/list of strings.
    pass


class DatasetError(AppError):
    # Raised when the survey data cannot be assembled for analysis.
    pass


class NoSurveysFound(DatasetError):
    pass


class NoQuestionsFound(DatasetError):
    pass


class AnalyzerError(AppError):
    # Raised when the external model call fails.
    pass


class MalformedAnalysisResult(AnalyzerError):
    # Raised when the model output is not JSON or does not match the result shape.
    pass


class UnknownTokenError(AppError):
    # Raised in strict mode when the result references a token we never issued.
    pass


class JobStateError(AppError):
    # Raised on an illegal analysis job transition.
    pass


class AnalysisInterrupted(AppError):
    # Raised when the service stops before an analysis could finish.
    pass
