"""
mrc: マクロ記録ツールのクライアント

ステップ列（マウス・キーボード操作と待機）の編集、グループの展開、
リモート実行器との WebSocket 接続と実行状態の同期を提供する。

主な構成:
  - model: ステップ・設定・テレメトリのデータモデル
  - editor: ステップリストの編集（StepStore）とグループ展開
  - protocol: 実行器とのメッセージ定義とディスパッチ
  - client: 接続管理・実行状態機械・アプリケーション本体
  - persistence: ステップ文書の保存・読み込み
"""

__version__ = "0.1.0"
