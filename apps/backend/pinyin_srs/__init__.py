"""Pinyin SRS backend package.

復習スケジューリング（SRS）・復習キューのキャッシュ・回答送信パイプラインを提供する。
"""
