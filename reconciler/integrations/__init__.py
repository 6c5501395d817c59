from .csv_parser import parse_transcription_csv

__all__ = ["parse_transcription_csv"]
