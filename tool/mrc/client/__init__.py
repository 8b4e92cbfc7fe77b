"""
クライアント本体パッケージ

主な構成:
  - connection: 実行器との WebSocket 接続と自動再接続
  - run_controller: 記録・実行状態の状態機械
  - app: 編集・実行コマンドをまとめる MacroClient
  - hotkeys: キーボードトリガー
  - notify: ユーザー通知
"""
