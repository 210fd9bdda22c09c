"""Code complexity metrics via lizard, run on a throwaway temp file."""
import asyncio
import logging
import os
import tempfile
from typing import Any, Dict

from bonsai.core.errors import AnalysisUnavailableError
from bonsai.core.metrics import MetricsCollector

logger = logging.getLogger(__name__)

LANGUAGE_EXTENSIONS: Dict[str, str] = {
    'typescript': '.ts',
    'javascript': '.js',
    'python': '.py',
    'cpp': '.cpp',
    'c': '.c',
    'csharp': '.cs',
    'java': '.java',
    'go': '.go',
    'ruby': '.rb',
    'php': '.php',
}


def extension_for_language(language_id: str) -> str:
    """Map an editor language id to a file extension lizard understands ('' if unknown)."""
    return LANGUAGE_EXTENSIONS.get((language_id or "").lower(), "")


def _report(result) -> Dict[str, Any]:
    return {
        "filename": result.filename,
        "nloc": result.nloc,
        "token_count": result.token_count,
        "function_count": len(result.function_list),
        "average_ccn": result.average_cyclomatic_complexity,
        "avg_nloc": result.average_nloc,
        "avg_token_count": result.average_token_count,
        "functions": [
            {
                "name": f.name,
                "long_name": getattr(f, "long_name", f.name),
                "nloc": f.nloc,
                "ccn": f.cyclomatic_complexity,
                "token_count": f.token_count,
                "parameters": f.parameter_count,
                "start_line": f.start_line,
                "end_line": f.end_line,
                "filename": f.filename,
            }
            for f in result.function_list
        ]
    }


def analyze_file(path: str) -> Dict[str, Any]:
    """
    Analyze one file with lizard.

    Raises:
        AnalysisUnavailableError: If lizard is not installed or analysis fails
    """
    try:
        import lizard
    except ImportError as e:
        raise AnalysisUnavailableError("lizard is not installed") from e

    try:
        return _report(lizard.analyze_file(path))
    except Exception as e:
        raise AnalysisUnavailableError(f"Lizard analysis failed: {e}") from e


async def analyze_code(code: str, name_hint: str = "snippet", extension: str = ".txt") -> Dict[str, Any]:
    """
    Write code to a uniquely named temp directory and analyze it.

    The directory is removed on every exit path.

    Args:
        code: Source text
        name_hint: Base file name (e.g. "node-4")
        extension: File extension selecting lizard's language reader

    Returns:
        Analyzer report

    Raises:
        AnalysisUnavailableError: If the analyzer is missing or fails
    """
    try:
        with tempfile.TemporaryDirectory(prefix="bonsai-") as temp_dir:
            temp_file = os.path.join(temp_dir, f"{name_hint}{extension}")
            with open(temp_file, "w", encoding="utf-8") as f:
                f.write(code)
            report = await asyncio.to_thread(analyze_file, temp_file)
    except AnalysisUnavailableError:
        MetricsCollector.record_analysis("unavailable")
        raise
    except (OSError, ValueError) as e:
        # ValueError covers text the file encoding rejects, e.g. lone surrogates
        MetricsCollector.record_analysis("unavailable")
        raise AnalysisUnavailableError(f"Could not prepare analysis file: {e}") from e

    MetricsCollector.record_analysis("ok")
    return report
